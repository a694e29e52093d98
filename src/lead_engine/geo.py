"""Service-area matching.

A business services a location when ANY of these independent signals holds:

1. the location zipcode is in ``service_zipcodes``
2. great-circle distance between the two coordinate pairs is within
   ``service_radius_miles`` (only when both pairs are known)
3. same city and an equivalent state ("CO" == "Colorado")
4. the location city, or "City, State", is listed in ``service_areas``
   (exact, case-sensitive; "denver" does not match "Denver")
5. statewide request: no city given and the states are equivalent

Everything here is pure; callers load businesses however they like and pass
any object exposing the Business attribute names.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

EARTH_RADIUS_MILES = 3959.0
DEFAULT_SERVICE_RADIUS_MILES = 25

STATE_NAME_TO_ABBR = {
    "alabama": "AL", "alaska": "AK", "arizona": "AZ", "arkansas": "AR",
    "california": "CA", "colorado": "CO", "connecticut": "CT", "delaware": "DE",
    "district of columbia": "DC", "florida": "FL", "georgia": "GA", "hawaii": "HI",
    "idaho": "ID", "illinois": "IL", "indiana": "IN", "iowa": "IA",
    "kansas": "KS", "kentucky": "KY", "louisiana": "LA", "maine": "ME",
    "maryland": "MD", "massachusetts": "MA", "michigan": "MI", "minnesota": "MN",
    "mississippi": "MS", "missouri": "MO", "montana": "MT", "nebraska": "NE",
    "nevada": "NV", "new hampshire": "NH", "new jersey": "NJ", "new mexico": "NM",
    "new york": "NY", "north carolina": "NC", "north dakota": "ND", "ohio": "OH",
    "oklahoma": "OK", "oregon": "OR", "pennsylvania": "PA", "rhode island": "RI",
    "south carolina": "SC", "south dakota": "SD", "tennessee": "TN", "texas": "TX",
    "utah": "UT", "vermont": "VT", "virginia": "VA", "washington": "WA",
    "west virginia": "WV", "wisconsin": "WI", "wyoming": "WY",
}
ABBR_TO_STATE_NAME = {abbr: name for name, abbr in STATE_NAME_TO_ABBR.items()}


def _clean(value: Optional[str]) -> str:
    if not value:
        return ""
    return " ".join(str(value).split())


def normalize_state(value: Optional[str]) -> Optional[str]:
    """Two-letter postal code for a state name or code, None when unknown."""
    cleaned = _clean(value)
    if not cleaned:
        return None
    upper = cleaned.upper()
    if upper in ABBR_TO_STATE_NAME:
        return upper
    return STATE_NAME_TO_ABBR.get(cleaned.lower())


def state_variants(value: Optional[str]) -> set[str]:
    """Lower-cased spellings that are equivalent to ``value`` (code and full name)."""
    cleaned = _clean(value)
    if not cleaned:
        return set()
    variants = {cleaned.lower()}
    code = normalize_state(cleaned)
    if code:
        variants.add(code.lower())
        variants.add(ABBR_TO_STATE_NAME[code])
    return variants


def states_equivalent(a: Optional[str], b: Optional[str]) -> bool:
    left, right = _clean(a), _clean(b)
    if not left or not right:
        return False
    if left == right:
        return True
    left_code = normalize_state(left)
    return left_code is not None and left_code == normalize_state(right)


def haversine_miles(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1 = math.radians(float(lat1))
    phi2 = math.radians(float(lat2))
    d_phi = math.radians(float(lat2) - float(lat1))
    d_lambda = math.radians(float(lng2) - float(lng1))
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(min(1.0, math.sqrt(a)))


@dataclass(frozen=True)
class ServiceArea:
    city: str
    state: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.city}, {self.state}" if self.state else self.city

    def covers(self, city: Optional[str], state: Optional[str]) -> bool:
        if self.city != _clean(city):
            return False
        if self.state is None:
            return True
        return self.state == _clean(state)


def parse_service_area(raw: Any) -> Optional[ServiceArea]:
    """Parse one ``service_areas`` entry; malformed entries come back as None."""
    if isinstance(raw, dict):
        city = _clean(raw.get("city"))
        state = _clean(raw.get("state")) or None
        return ServiceArea(city, state) if city else None
    if not isinstance(raw, str):
        return None
    cleaned = _clean(raw)
    if not cleaned:
        return None
    parts = [part.strip() for part in cleaned.split(",")]
    if len(parts) == 1:
        return ServiceArea(parts[0])
    if len(parts) == 2 and parts[0]:
        return ServiceArea(parts[0], parts[1] or None)
    return None


def parse_service_areas(raw: Any) -> list[ServiceArea]:
    if not isinstance(raw, (list, tuple, set)):
        return []
    areas = []
    for entry in raw:
        area = parse_service_area(entry)
        if area is not None and area not in areas:
            areas.append(area)
    return areas


def service_area_labels(raw: Any) -> list[str]:
    return [area.label for area in parse_service_areas(raw)]


@dataclass(frozen=True)
class Location:
    city: Optional[str] = None
    state: Optional[str] = None
    zipcode: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    @classmethod
    def from_quote(cls, quote) -> Location:
        return cls(
            city=quote.service_city,
            state=quote.service_state,
            zipcode=quote.service_zipcode,
            latitude=quote.latitude,
            longitude=quote.longitude,
        )


def _within_radius(business, location: Location) -> bool:
    lat = getattr(business, "latitude", None)
    lng = getattr(business, "longitude", None)
    if lat is None or lng is None or not location.has_coordinates:
        return False
    radius = getattr(business, "service_radius_miles", None)
    if radius is None:
        radius = DEFAULT_SERVICE_RADIUS_MILES
    return haversine_miles(lat, lng, location.latitude, location.longitude) <= radius


def matches(business, location: Location) -> bool:
    zipcode = _clean(location.zipcode)
    if zipcode and zipcode in {_clean(z) for z in (getattr(business, "service_zipcodes", None) or [])}:
        return True

    if _within_radius(business, location):
        return True

    city = _clean(location.city)
    if city and city == _clean(getattr(business, "city", None)) and states_equivalent(
        getattr(business, "state", None), location.state
    ):
        return True

    if city:
        for area in parse_service_areas(getattr(business, "service_areas", None)):
            if area.covers(city, location.state):
                return True

    if not city and states_equivalent(getattr(business, "state", None), location.state):
        return True

    return False


def is_currently_featured(business, now: Optional[datetime] = None) -> bool:
    now = now or datetime.now(timezone.utc)
    until = getattr(business, "featured_until", None)
    return bool(getattr(business, "is_featured", False)) and until is not None and until > now


def _created_ts(business) -> float:
    created = getattr(business, "created_at", None)
    return created.timestamp() if created is not None else 0.0


def _featured_newest(now: datetime) -> Callable:
    return lambda b: (0 if is_currently_featured(b, now) else 1, -_created_ts(b))


def _featured_reviews(now: datetime) -> Callable:
    return lambda b: (0 if is_currently_featured(b, now) else 1, -(getattr(b, "reviews", None) or 0))


SORT_STRATEGIES: dict[str, Callable[[datetime], Callable]] = {
    "featured_newest": _featured_newest,
    "featured_reviews": _featured_reviews,
}


def rank_businesses(businesses: Iterable, strategy: str = "featured_newest", now: Optional[datetime] = None) -> list:
    if strategy not in SORT_STRATEGIES:
        raise ValueError(f"Unknown sort strategy: {strategy}")
    now = now or datetime.now(timezone.utc)
    return sorted(businesses, key=SORT_STRATEGIES[strategy](now))
