from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from factories import assign, give_credits, make_business, make_quote, utc_now
from lead_engine.claims import ClaimState, issue_token, lookup_by_token
from lead_engine.dedupe import IdentityKey, apply, find_groups, merge, preview
from lead_engine.errors import Expired
from lead_engine.models import Business, BusinessSubscription, ClaimCampaign, LeadAssignment, LeadReveal


def _pair(db: Session):
    a = make_business(
        db,
        "Peak Roofing",
        is_claimed=True,
        reviews=50,
        created_at=datetime(2023, 5, 1, tzinfo=timezone.utc),
    )
    b = make_business(
        db,
        "Peak Roofing",
        is_claimed=False,
        reviews=10,
        phone="303-555-0199",
        email="info@peakroofing.com",
        created_at=datetime(2022, 5, 1, tzinfo=timezone.utc),
    )
    return a, b


def test_merge_keeps_claimed_listing_and_repoints_everything(db_session: Session):
    a, b = _pair(db_session)
    campaign = ClaimCampaign(business_id=b.id, claim_token="peakb001", expires_at=utc_now() + timedelta(days=30))
    db_session.add(campaign)
    shared = make_quote(db_session, business_id=b.id)
    only_b = make_quote(db_session, customer_email="other@example.com")
    assign(db_session, shared, a)
    assign(db_session, shared, b)
    assign(db_session, only_b, b)
    db_session.add(LeadReveal(lead_id=only_b.id, business_id=b.id))
    give_credits(db_session, a, 2)
    give_credits(db_session, b, 3)
    db_session.flush()
    a_id, b_id = a.id, b.id

    [group] = find_groups(db_session, IdentityKey.NAME_LOCATION)
    assert group.survivor.id == a_id

    survivor_id = merge(db_session, group)
    db_session.expire_all()

    assert survivor_id == a_id
    assert db_session.get(Business, b_id) is None
    survivor = db_session.get(Business, a_id)
    assert survivor.phone == "303-555-0199"
    assert survivor.email == "info@peakroofing.com"
    assert survivor.reviews == 50

    moved = db_session.get(ClaimCampaign, campaign.id)
    assert moved.business_id == a_id
    # The survivor is claimed, so the inherited campaign is closed.
    assert moved.closed_at is not None
    assert moved.state == ClaimState.EXPIRED.value

    assert db_session.get(type(shared), shared.id).business_id == a_id
    assignments = db_session.execute(
        select(LeadAssignment.lead_id, LeadAssignment.business_id)
    ).all()
    assert sorted((str(l), str(bid)) for l, bid in assignments) == sorted(
        [(str(shared.id), str(a_id)), (str(only_b.id), str(a_id))]
    )
    assert db_session.execute(select(LeadReveal.business_id)).scalar_one() == a_id
    subscription = db_session.execute(select(BusinessSubscription)).scalar_one()
    assert subscription.business_id == a_id
    assert subscription.lead_credits == 5


def test_apply_twice_is_a_no_op(db_session: Session):
    _pair(db_session)
    make_business(db_session, "Solo Co")

    first = apply(db_session, IdentityKey.NAME_LOCATION)
    assert first.groups == 1
    assert first.deleted == 1
    assert first.errors == []

    second = apply(db_session, IdentityKey.NAME_LOCATION)
    assert second.groups == 0
    assert second.deleted == 0
    assert db_session.execute(select(func.count(Business.id))).scalar() == 2


def test_preview_never_mutates(db_session: Session):
    a, b = _pair(db_session)
    report = preview(db_session, IdentityKey.NAME_LOCATION)
    assert len(report) == 1
    assert report[0]["survivor"]["id"] == str(a.id)
    assert [d["id"] for d in report[0]["duplicates"]] == [str(b.id)]
    assert report[0]["merged"]["email"] == "info@peakroofing.com"
    db_session.expire_all()
    assert db_session.execute(select(func.count(Business.id))).scalar() == 2
    assert db_session.get(Business, a.id).email is None


def test_email_identity_groups_by_email_and_location(db_session: Session):
    make_business(db_session, "Peak Roofing LLC", email="team@peak.com", is_claimed=False)
    make_business(db_session, "Peak Roofing", email="team@peak.com", is_claimed=False)
    make_business(db_session, "Peak Roofing", email="team@peak.com", is_claimed=False, city="Boulder")

    groups = find_groups(db_session, IdentityKey.EMAIL_LOCATION)
    assert len(groups) == 1
    assert len(groups[0].members) == 2


def test_merged_open_campaigns_collapse_to_one(db_session: Session):
    first = make_business(db_session, "Twin Co", is_claimed=False, reviews=5)
    second = make_business(db_session, "Twin Co", is_claimed=False, reviews=1)
    kept = issue_token(db_session, first.id)
    closed = issue_token(db_session, second.id)

    summary = apply(db_session, IdentityKey.NAME_LOCATION)
    assert summary.groups == 1
    db_session.expire_all()

    open_rows = db_session.execute(
        select(ClaimCampaign.id).where(ClaimCampaign.closed_at.is_(None))
    ).scalars().all()
    assert open_rows == [kept.id]
    with pytest.raises(Expired):
        lookup_by_token(db_session, closed.claim_token)
