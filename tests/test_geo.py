from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

from lead_engine.geo import (
    EARTH_RADIUS_MILES,
    Location,
    ServiceArea,
    haversine_miles,
    matches,
    normalize_state,
    parse_service_area,
    rank_businesses,
    service_area_labels,
    states_equivalent,
)


def _business(**fields):
    values = {
        "city": None,
        "state": None,
        "latitude": None,
        "longitude": None,
        "service_radius_miles": 25,
        "service_zipcodes": [],
        "service_areas": [],
        "is_featured": False,
        "featured_until": None,
        "reviews": 0,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }
    values.update(fields)
    return SimpleNamespace(**values)


def _miles_north(lat: float, miles: float) -> float:
    return lat + math.degrees(miles / EARTH_RADIUS_MILES)


def test_radius_match_within_and_beyond_service_radius():
    business = _business(latitude=39.0, longitude=-77.5, service_radius_miles=25)

    near = Location(latitude=_miles_north(39.0, 10), longitude=-77.5)
    far = Location(latitude=_miles_north(39.0, 40), longitude=-77.5)

    assert matches(business, near) is True
    assert matches(business, far) is False


def test_missing_radius_falls_back_to_default():
    business = _business(latitude=39.0, longitude=-77.5, service_radius_miles=None)
    assert matches(business, Location(latitude=_miles_north(39.0, 20), longitude=-77.5)) is True
    assert matches(business, Location(latitude=_miles_north(39.0, 30), longitude=-77.5)) is False


def test_radius_rule_needs_both_coordinate_pairs():
    business = _business(latitude=39.0, longitude=-77.5)
    assert matches(business, Location(latitude=39.0)) is False
    assert matches(_business(), Location(latitude=39.0, longitude=-77.5)) is False


def test_haversine_is_symmetric_and_zero_on_same_point():
    assert haversine_miles(39.0, -77.5, 39.0, -77.5) == 0
    there = haversine_miles(39.0, -77.5, 40.0, -78.0)
    back = haversine_miles(40.0, -78.0, 39.0, -77.5)
    assert there == pytest.approx(back)
    assert there == pytest.approx(74.06, abs=0.5)


def test_zipcode_match():
    business = _business(service_zipcodes=["80202", "80203"])
    assert matches(business, Location(zipcode="80203")) is True
    assert matches(business, Location(zipcode="80301")) is False


def test_same_city_with_equivalent_state_spellings():
    business = _business(city="Denver", state="Colorado")
    assert matches(business, Location(city="Denver", state="CO")) is True
    assert matches(business, Location(city="Denver", state="co")) is True
    assert matches(business, Location(city="Denver", state="TX")) is False


def test_service_area_match_is_exact():
    business = _business(city="Boulder", state="CO", service_areas=["Denver", "Aurora, CO"])
    assert matches(business, Location(city="Denver", state="CO")) is True
    assert matches(business, Location(city="Aurora", state="CO")) is True
    assert matches(business, Location(city="denver", state="CO")) is False
    assert matches(business, Location(city="Aurora", state="IL")) is False


def test_statewide_request_matches_state_only_without_city():
    business = _business(city="Boulder", state="CO")
    assert matches(business, Location(state="Colorado")) is True
    assert matches(business, Location(city="Pueblo", state="Colorado")) is False


def test_no_signal_never_matches():
    assert matches(_business(city="Boulder", state="CO"), Location()) is False


def test_state_normalization():
    assert normalize_state("colorado") == "CO"
    assert normalize_state(" co ") == "CO"
    assert normalize_state("New  York") == "NY"
    assert normalize_state("Atlantis") is None
    assert states_equivalent("NY", "new york") is True
    assert states_equivalent("Atlantis", "Atlantis") is True
    assert states_equivalent(None, "CO") is False


def test_parse_service_area_forms():
    assert parse_service_area("Denver") == ServiceArea("Denver")
    assert parse_service_area("Aurora,  CO") == ServiceArea("Aurora", "CO")
    assert parse_service_area({"city": "Lakewood", "state": "CO"}) == ServiceArea("Lakewood", "CO")
    assert parse_service_area("a, b, c") is None
    assert parse_service_area(42) is None
    assert service_area_labels(["Denver", "Denver", {"city": "Aurora", "state": "CO"}, None]) == [
        "Denver",
        "Aurora, CO",
    ]


def test_ranking_puts_current_features_first():
    now = datetime(2025, 6, 1, tzinfo=timezone.utc)
    old_featured = _business(
        name="old",
        is_featured=True,
        featured_until=now + timedelta(days=3),
        created_at=datetime(2020, 1, 1, tzinfo=timezone.utc),
    )
    lapsed = _business(
        name="lapsed",
        is_featured=True,
        featured_until=now - timedelta(days=1),
        created_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        reviews=5,
    )
    newest = _business(name="newest", created_at=datetime(2025, 5, 1, tzinfo=timezone.utc), reviews=1)

    by_newest = rank_businesses([lapsed, newest, old_featured], "featured_newest", now=now)
    assert [b.name for b in by_newest] == ["old", "newest", "lapsed"]

    by_reviews = rank_businesses([newest, lapsed, old_featured], "featured_reviews", now=now)
    assert [b.name for b in by_reviews] == ["old", "lapsed", "newest"]


def test_unknown_sort_strategy_is_rejected():
    with pytest.raises(ValueError):
        rank_businesses([], "alphabetical")
