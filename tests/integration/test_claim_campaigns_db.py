from __future__ import annotations

import re
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from factories import make_business, utc_now
from lead_engine.claims import (
    AUTO_CAMPAIGN_NAME,
    ClaimState,
    FunnelEvent,
    backfill_auto_campaigns,
    campaign_stats,
    complete_claim,
    create_business,
    expire_campaigns,
    issue_bulk,
    issue_token,
    lookup_by_token,
    record_event,
)
from lead_engine.contacts import campaign_recipients
from lead_engine.errors import AlreadyClaimed, CampaignExists, Expired, NotFound
from lead_engine.models import Business, ClaimCampaign, ClaimCampaignEvent, ClaimContact


def _unclaimed(db: Session, name: str = "Mile High Plumbing", **fields) -> Business:
    return make_business(db, name, is_claimed=False, **fields)


def _open_campaigns(db: Session, business_id) -> int:
    return db.execute(
        select(func.count(ClaimCampaign.id))
        .where(ClaimCampaign.business_id == business_id)
        .where(ClaimCampaign.closed_at.is_(None))
    ).scalar()


def test_issue_token_creates_one_open_campaign(db_session: Session):
    business = _unclaimed(db_session, email="owner@plumbco.com; office@plumbco.com")

    campaign = issue_token(db_session, business.id)
    assert re.fullmatch(r"[a-z0-9]{8,}", campaign.claim_token)
    assert campaign.state == ClaimState.CREATED.value
    assert campaign.expires_at > utc_now() + timedelta(days=29)

    contacts = db_session.execute(
        select(ClaimContact).where(ClaimContact.campaign_id == campaign.id).order_by(ClaimContact.is_primary.desc())
    ).scalars().all()
    assert [(c.email, c.is_primary) for c in contacts] == [("owner@plumbco.com", True), ("office@plumbco.com", False)]

    with pytest.raises(CampaignExists):
        issue_token(db_session, business.id)
    assert _open_campaigns(db_session, business.id) == 1


def test_issue_token_rejects_claimed_and_missing_businesses(db_session: Session):
    claimed = make_business(db_session, is_claimed=True)
    with pytest.raises(AlreadyClaimed):
        issue_token(db_session, claimed.id)
    with pytest.raises(NotFound):
        issue_token(db_session, uuid.uuid4())


def test_stale_campaign_is_replaced(db_session: Session):
    business = _unclaimed(db_session)
    old = issue_token(db_session, business.id, expires_in_days=1)

    later = utc_now() + timedelta(days=2)
    fresh = issue_token(db_session, business.id, now=later)
    db_session.expire_all()

    assert fresh.id != old.id
    old = db_session.get(ClaimCampaign, old.id)
    assert old.state == ClaimState.EXPIRED.value
    assert old.closed_at is not None
    assert _open_campaigns(db_session, business.id) == 1


def test_bulk_issue_collects_skips_and_errors(db_session: Session):
    fresh = _unclaimed(db_session, "Fresh Co")
    busy = _unclaimed(db_session, "Busy Co")
    claimed = make_business(db_session, "Claimed Co")
    issue_token(db_session, busy.id)

    result = issue_bulk(db_session, [fresh.id, busy.id, claimed.id, uuid.uuid4()])
    assert result["summary"] == {"total": 4, "successful": 1, "skipped": 1, "failed": 2}
    assert result["campaigns"][0].business_id == fresh.id
    assert result["skipped"][0]["business_id"] == str(busy.id)


def test_lookup_distinguishes_invalid_expired_and_claimed(db_session: Session):
    business = _unclaimed(db_session)
    campaign = issue_token(db_session, business.id, expires_in_days=30)

    found_business, found_campaign = lookup_by_token(db_session, campaign.claim_token.upper())
    assert found_business.id == business.id
    assert found_campaign.id == campaign.id

    with pytest.raises(NotFound):
        lookup_by_token(db_session, "zzzzzzzz")
    with pytest.raises(Expired):
        lookup_by_token(db_session, campaign.claim_token, now=campaign.expires_at)

    complete_claim(db_session, campaign.claim_token)
    with pytest.raises(AlreadyClaimed):
        lookup_by_token(db_session, campaign.claim_token)
    # Claimed wins over expired.
    with pytest.raises(AlreadyClaimed):
        lookup_by_token(db_session, campaign.claim_token, now=campaign.expires_at + timedelta(days=1))


def test_events_are_recorded_once(db_session: Session):
    business = _unclaimed(db_session, email="owner@plumbco.com")
    campaign = issue_token(db_session, business.id)
    sent_at = utc_now()

    record_event(db_session, campaign.claim_token, FunnelEvent.SENT, email="owner@plumbco.com", now=sent_at)
    record_event(db_session, campaign.claim_token, FunnelEvent.SENT, now=sent_at + timedelta(hours=1))
    record_event(db_session, campaign.claim_token, FunnelEvent.CLICKED, now=sent_at + timedelta(hours=2))
    record_event(db_session, campaign.claim_token, FunnelEvent.OPENED, now=sent_at + timedelta(hours=3))

    assert campaign.email_sent_at == sent_at
    assert campaign.email_sent_to == "owner@plumbco.com"
    assert campaign.state == ClaimState.CLICKED.value
    events = db_session.execute(
        select(ClaimCampaignEvent.event_type)
        .where(ClaimCampaignEvent.campaign_id == campaign.id)
        .order_by(ClaimCampaignEvent.occurred_at)
    ).scalars().all()
    assert events == ["sent", "clicked", "opened"]

    contact = db_session.execute(select(ClaimContact).where(ClaimContact.campaign_id == campaign.id)).scalar_one()
    assert contact.email_sent_at == sent_at


def test_unknown_token_event_is_not_found(db_session: Session):
    with pytest.raises(NotFound):
        record_event(db_session, "nothere1", FunnelEvent.OPENED)


def test_events_after_expiry_or_claim_are_refused(db_session: Session):
    business = _unclaimed(db_session)
    campaign = issue_token(db_session, business.id, expires_in_days=1)

    with pytest.raises(Expired):
        record_event(db_session, campaign.claim_token, FunnelEvent.CLICKED, now=campaign.expires_at + timedelta(days=5))
    assert campaign.link_clicked_at is None
    assert campaign.state == ClaimState.CREATED.value

    complete_claim(db_session, campaign.claim_token)
    with pytest.raises(AlreadyClaimed):
        record_event(db_session, campaign.claim_token, FunnelEvent.OPENED, now=utc_now() + timedelta(hours=1))
    db_session.expire_all()
    claimed = db_session.get(ClaimCampaign, campaign.id)
    assert claimed.email_opened_at is None
    assert claimed.state == ClaimState.CLAIMED.value


def test_complete_claim_flips_business_once(db_session: Session):
    business = _unclaimed(db_session)
    campaign = issue_token(db_session, business.id)
    user_id = uuid.uuid4()

    record_event(db_session, campaign.claim_token, FunnelEvent.BOUNCED)
    done = complete_claim(db_session, campaign.claim_token, user_id=user_id)

    assert done.state == ClaimState.CLAIMED.value
    assert done.claimed_at is not None
    assert done.closed_at is not None
    assert done.claimed_by_user_id == user_id
    db_session.expire_all()
    assert db_session.get(Business, business.id).is_claimed is True
    assert _open_campaigns(db_session, business.id) == 0

    with pytest.raises(AlreadyClaimed):
        complete_claim(db_session, campaign.claim_token)
    with pytest.raises(AlreadyClaimed):
        issue_token(db_session, business.id)


def test_expired_link_cannot_be_claimed(db_session: Session):
    business = _unclaimed(db_session)
    campaign = issue_token(db_session, business.id, expires_in_days=1)
    with pytest.raises(Expired):
        complete_claim(db_session, campaign.claim_token, now=utc_now() + timedelta(days=2))
    db_session.expire_all()
    assert db_session.get(Business, business.id).is_claimed is False


def test_expiry_sweep(db_session: Session):
    stale = _unclaimed(db_session, "Stale Co")
    current = _unclaimed(db_session, "Current Co")
    stale_campaign = issue_token(db_session, stale.id, expires_in_days=1)
    issue_token(db_session, current.id, expires_in_days=60)

    result = expire_campaigns(db_session, now=utc_now() + timedelta(days=5))
    assert result == {"expired": 1, "closed_on_claimed": 0}
    db_session.expire_all()
    stale_campaign = db_session.get(ClaimCampaign, stale_campaign.id)
    assert stale_campaign.state == ClaimState.EXPIRED.value
    assert stale_campaign.closed_at is not None
    assert _open_campaigns(db_session, current.id) == 1

    assert expire_campaigns(db_session, now=utc_now() + timedelta(days=5)) == {"expired": 0, "closed_on_claimed": 0}


def test_new_business_gets_an_auto_campaign(db_session: Session):
    business, campaign = create_business(db_session, name="New Listing", email="hello@newlisting.com", city="Denver", state="CO")
    assert campaign is not None
    assert campaign.campaign_name == AUTO_CAMPAIGN_NAME
    assert campaign.expires_at > utc_now() + timedelta(days=360)
    assert campaign_recipients(db_session, campaign).emails == ["hello@newlisting.com"]

    _, no_email = create_business(db_session, name="No Email Listing")
    assert no_email is None


def test_backfill_only_touches_businesses_without_campaigns(db_session: Session):
    has_one = _unclaimed(db_session, "Has One", email="a@hasone.com")
    issue_token(db_session, has_one.id)
    missing = _unclaimed(db_session, "Missing", email="b@missing.com")
    _unclaimed(db_session, "No Email")

    result = backfill_auto_campaigns(db_session)
    assert result["issued"] == 1
    assert _open_campaigns(db_session, missing.id) == 1
    assert _open_campaigns(db_session, has_one.id) == 1

    assert backfill_auto_campaigns(db_session)["issued"] == 0


def test_campaign_stats(db_session: Session):
    business = _unclaimed(db_session, email="a@x.com")
    campaign = issue_token(db_session, business.id)
    record_event(db_session, campaign.claim_token, FunnelEvent.SENT)
    make_business(db_session, "Claimed Co")

    stats = campaign_stats(db_session)
    assert stats["total_businesses"] == 2
    assert stats["total_unclaimed"] == 1
    assert stats["with_tokens"] == 1
    assert stats["emails_sent"] == 1
    assert stats["open_campaigns"] == 1
    assert stats["by_state"] == {"sent": 1}
