from __future__ import annotations

import math

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from factories import make_business, make_quote
from lead_engine.errors import NotFound, ValidationError
from lead_engine.geo import EARTH_RADIUS_MILES, Location
from lead_engine.models import LeadAssignment, Quote
from lead_engine.routing import (
    archive_quote,
    create_quote,
    find_serving_businesses,
    route,
    update_assignment_status,
)


def _no_geocode(_address):
    return None


def _assignment_count(db: Session) -> int:
    return db.execute(select(func.count(LeadAssignment.id))).scalar()


def test_route_is_idempotent(db_session: Session):
    claimed = make_business(db_session, "Claimed Co")
    verified = make_business(db_session, "Verified Co", is_claimed=False, is_verified=True, city="Aurora", service_zipcodes=["80202"])
    make_business(db_session, "Unlisted Co", is_claimed=False, is_verified=False)
    make_business(db_session, "Far Away Co", city="Austin", state="TX", zipcode="73301")
    quote = make_quote(db_session)

    first = route(db_session, quote)
    assert first.matched == 2
    assert {a.business_id for a in first.assignments} == {claimed.id, verified.id}
    assert all(a.status == "new" for a in first.assignments)

    second = route(db_session, quote)
    assert second.matched == 2
    assert second.assignments == []
    assert _assignment_count(db_session) == 2


def test_rerouting_picks_up_new_coverage_only(db_session: Session):
    make_business(db_session, "First Co")
    quote = make_quote(db_session)
    route(db_session, quote)

    newcomer = make_business(db_session, "Second Co", is_claimed=False, is_verified=True)
    again = route(db_session, quote)
    assert [a.business_id for a in again.assignments] == [newcomer.id]
    assert _assignment_count(db_session) == 2


def test_no_coverage_is_not_an_error(db_session: Session):
    make_business(db_session, city="Austin", state="TX", zipcode="73301")
    quote, result = create_quote(
        db_session,
        {
            "customer_name": "Sam",
            "customer_email": "Sam@Example.com",
            "service_type": "plumbing",
            "service_city": "Boise",
            "service_state": "ID",
        },
        geocoder=_no_geocode,
    )
    assert result.matched == 0
    assert result.assignments == []
    assert quote.status == "new"
    assert quote.customer_email == "sam@example.com"
    assert db_session.get(Quote, quote.id) is not None


def test_create_quote_geocodes_for_radius_matching(db_session: Session):
    business = make_business(db_session, city="Leesburg", state="VA", zipcode="20175", latitude=39.0, longitude=-77.5)
    nearby = (39.0 + math.degrees(10 / EARTH_RADIUS_MILES), -77.5)
    calls = []

    def geocoder(address):
        calls.append(address)
        return nearby

    quote, result = create_quote(
        db_session,
        {
            "customer_name": "Pat",
            "customer_email": "pat@example.com",
            "service_type": "fencing",
            "service_address": "1 Oak Ln",
            "service_city": "Lucketts",
            "service_state": "VA",
        },
        geocoder=geocoder,
    )
    assert calls == ["1 Oak Ln, Lucketts, VA"]
    assert quote.latitude == pytest.approx(nearby[0])
    assert [a.business_id for a in result.assignments] == [business.id]


def test_direct_request_reaches_the_chosen_business(db_session: Session):
    chosen = make_business(db_session, "Chosen Co", city="Austin", state="TX", zipcode="73301")
    quote, result = create_quote(
        db_session,
        {
            "customer_name": "Kim",
            "customer_email": "kim@example.com",
            "service_type": "hvac",
            "service_zipcode": "99501",
            "business_id": str(chosen.id),
        },
        geocoder=_no_geocode,
    )
    assert quote.business_id == chosen.id
    assert [a.business_id for a in result.assignments] == [chosen.id]


@pytest.mark.parametrize(
    "payload",
    [
        {"customer_name": "", "customer_email": "a@b.com", "service_type": "x", "service_city": "Denver"},
        {"customer_name": "A", "customer_email": "nope", "service_type": "x", "service_city": "Denver"},
        {"customer_name": "A", "customer_email": "a@b.com", "service_type": "x"},
        {"customer_name": "A", "customer_email": "a@b.com", "service_type": "x", "service_city": "Denver", "business_id": "zzz"},
    ],
)
def test_create_quote_validation(db_session: Session, payload):
    with pytest.raises(ValidationError):
        create_quote(db_session, payload, geocoder=_no_geocode)


def test_assignment_status_is_per_business(db_session: Session):
    owner = make_business(db_session, "Owner Co")
    other = make_business(db_session, "Other Co")
    quote = make_quote(db_session)
    route(db_session, quote)

    assignment = update_assignment_status(db_session, quote.id, owner.id, status="quoted", notes="Sent estimate", quoted_price=1250)
    assert assignment.status == "quoted"
    assert quote.status == "new"

    untouched = db_session.execute(
        select(LeadAssignment).where(LeadAssignment.business_id == other.id)
    ).scalar_one()
    assert untouched.status == "new"

    with pytest.raises(ValidationError):
        update_assignment_status(db_session, quote.id, owner.id, status="bogus")
    with pytest.raises(NotFound):
        update_assignment_status(db_session, make_quote(db_session).id, owner.id, status="won")


def test_archive_quote(db_session: Session):
    quote = make_quote(db_session)
    assert archive_quote(db_session, quote.id).status == "archived"


def test_directory_lists_unclaimed_businesses_too(db_session: Session):
    claimed = make_business(db_session, "Claimed Co", reviews=3)
    unclaimed = make_business(db_session, "Unclaimed Co", is_claimed=False, reviews=40)
    make_business(db_session, "Elsewhere Co", city="Austin", state="TX", zipcode="73301")

    listed = find_serving_businesses(db_session, Location(city="Denver", state="Colorado"), strategy="featured_reviews")
    assert [b.id for b in listed] == [unclaimed.id, claimed.id]


def test_messy_whitespace_in_stored_coverage_still_matches(db_session: Session):
    home = make_business(db_session, "Capital Co", city="Albany", state="New  York", zipcode="12207")
    areas = make_business(db_session, "Border Co", city="Bennington", state="VT", zipcode="05201", service_areas=["Saratoga\tSprings, NY"])
    zips = make_business(db_session, "Zip Co", city="Rutland", state="VT", zipcode="05701", service_zipcodes=[" 12866 "])

    albany = find_serving_businesses(db_session, Location(city="Albany", state="NY"))
    assert [b.id for b in albany] == [home.id]

    saratoga = find_serving_businesses(db_session, Location(city="Saratoga Springs", state="NY", zipcode="12866"))
    assert {b.id for b in saratoga} == {areas.id, zips.id}
