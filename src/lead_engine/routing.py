from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy import Text, and_, cast, false, func, or_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from .contacts import EMAIL_RE
from .errors import NotFound, ValidationError
from .geo import (
    DEFAULT_SERVICE_RADIUS_MILES,
    SORT_STRATEGIES,
    Location,
    matches,
    rank_businesses,
    state_variants,
)
from .geocoding import format_address, geocode
from .models import LEAD_STATUSES, Business, LeadAssignment, Quote

logger = logging.getLogger(__name__)

MILES_PER_DEGREE_LATITUDE = 69.0

Geocoder = Callable[[str], Optional[tuple[float, float]]]


@dataclass
class RouteResult:
    assignments: list[LeadAssignment] = field(default_factory=list)
    considered: int = 0
    matched: int = 0


def _squashed(column):
    """lower(column) with whitespace runs collapsed, the SQL side of geo._clean."""
    return func.lower(func.trim(func.regexp_replace(column, r"\s+", " ", "g")))


def _coverage_prefilter(location: Location):
    """SQL superset of geo.matches: every business that could match passes.

    The exact decision is made in Python afterwards; this only keeps the
    candidate scan away from businesses in unrelated places.
    """
    clauses = []
    zipcode = " ".join((location.zipcode or "").split())
    if zipcode:
        clauses.append(_squashed(func.array_to_string(Business.service_zipcodes, "|")).contains(zipcode.lower()))
    variants = state_variants(location.state)
    if variants:
        clauses.append(_squashed(Business.state).in_(sorted(variants)))
    if location.has_coordinates:
        radius = func.coalesce(Business.service_radius_miles, DEFAULT_SERVICE_RADIUS_MILES)
        clauses.append(
            and_(
                Business.latitude.isnot(None),
                Business.longitude.isnot(None),
                func.abs(Business.latitude - float(location.latitude)) * MILES_PER_DEGREE_LATITUDE <= radius + 1,
            )
        )
    city_words = (location.city or "").split()
    if city_words:
        # JSON text escapes tabs and newlines, so match on a single word of the city.
        longest = max(city_words, key=len).lower()
        clauses.append(func.lower(cast(Business.service_areas, Text)).contains(longest))
    return or_(*clauses) if clauses else false()


def _serving(session: Session, location: Location, *criteria) -> tuple[int, list[Business]]:
    stmt = select(Business).where(_coverage_prefilter(location))
    for criterion in criteria:
        stmt = stmt.where(criterion)
    candidates = session.execute(stmt).scalars().all()
    return len(candidates), [business for business in candidates if matches(business, location)]


def route(session: Session, quote: Quote) -> RouteResult:
    """Assign a lead to every claimed or verified business that services its location.

    Existing (lead, business) pairs are left alone, so routing the same lead
    again only adds businesses that started covering the area since. No
    coverage is a normal outcome.
    """
    location = Location.from_quote(quote)
    eligible = or_(Business.is_claimed.is_(True), Business.is_verified.is_(True))
    considered, matched = _serving(session, location, eligible)

    if quote.business_id is not None and all(b.id != quote.business_id for b in matched):
        # The customer asked this business directly.
        direct = session.execute(select(Business).where(Business.id == quote.business_id).where(eligible)).scalar_one_or_none()
        if direct is not None:
            considered += 1
            matched.append(direct)

    result = RouteResult(considered=considered, matched=len(matched))
    for business in rank_businesses(matched, "featured_newest"):
        assignment_id = session.execute(
            insert(LeadAssignment)
            .values(id=uuid.uuid4(), lead_id=quote.id, business_id=business.id, status="new")
            .on_conflict_do_nothing(index_elements=["lead_id", "business_id"])
            .returning(LeadAssignment.id)
        ).scalar_one_or_none()
        if assignment_id is not None:
            result.assignments.append(session.get(LeadAssignment, assignment_id))

    if not matched:
        logger.info("No businesses service %s, %s %s yet (lead %s)", quote.service_city, quote.service_state, quote.service_zipcode, quote.id)
    else:
        logger.info("Lead %s routed: %d matched, %d new assignments", quote.id, len(matched), len(result.assignments))
    return result


def find_serving_businesses(
    session: Session,
    location: Location,
    strategy: str = "featured_newest",
    limit: int = 50,
) -> list[Business]:
    """Directory listing for a location, all businesses, ranked by a named strategy."""
    if strategy not in SORT_STRATEGIES:
        raise ValueError(f"Unknown sort strategy: {strategy}")
    _, matched = _serving(session, location)
    return rank_businesses(matched, strategy)[:limit]


def _clean(value) -> Optional[str]:
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned or None


def create_quote(session: Session, payload: dict, geocoder: Optional[Geocoder] = None) -> tuple[Quote, RouteResult]:
    """Public quote intake: validate, geocode when needed, store, route."""
    name = _clean(payload.get("customer_name"))
    email = (_clean(payload.get("customer_email")) or "").lower()
    service_type = _clean(payload.get("service_type"))
    if not name:
        raise ValidationError("customer_name is required")
    if not EMAIL_RE.match(email):
        raise ValidationError("customer_email is not a valid email address")
    if not service_type:
        raise ValidationError("service_type is required")

    city = _clean(payload.get("service_city"))
    state = _clean(payload.get("service_state"))
    zipcode = _clean(payload.get("service_zipcode"))
    if not (city or state or zipcode):
        raise ValidationError("A service city, state or zipcode is required")

    business_id = payload.get("business_id")
    if business_id is not None:
        if not isinstance(business_id, uuid.UUID):
            try:
                business_id = uuid.UUID(str(business_id))
            except ValueError:
                raise ValidationError("business_id is not a valid id") from None
        if session.get(Business, business_id) is None:
            raise NotFound("Business not found")

    latitude = payload.get("latitude")
    longitude = payload.get("longitude")
    if latitude is None or longitude is None:
        address = format_address(payload.get("service_address"), city, state, zipcode)
        coordinates = (geocoder or geocode)(address)
        if coordinates is not None:
            latitude, longitude = coordinates
        else:
            latitude = longitude = None

    quote = Quote(
        customer_name=name,
        customer_email=email,
        customer_phone=_clean(payload.get("customer_phone")),
        service_type=service_type,
        project_description=_clean(payload.get("project_description")),
        service_address=_clean(payload.get("service_address")),
        service_city=city,
        service_state=state,
        service_zipcode=zipcode,
        latitude=latitude,
        longitude=longitude,
        business_id=business_id,
        status="new",
        source=_clean(payload.get("source")) or "website",
    )
    session.add(quote)
    session.flush()
    return quote, route(session, quote)


def update_assignment_status(
    session: Session,
    lead_id: uuid.UUID,
    business_id: uuid.UUID,
    status: Optional[str] = None,
    notes: Optional[str] = None,
    quoted_price: Optional[Decimal] = None,
) -> LeadAssignment:
    """Per-business tracking status; the lead's own status is untouched."""
    if status is not None and status not in LEAD_STATUSES:
        raise ValidationError(f"Unknown status {status!r}")

    assignment = session.execute(
        select(LeadAssignment)
        .where(LeadAssignment.lead_id == lead_id)
        .where(LeadAssignment.business_id == business_id)
        .with_for_update()
    ).scalar_one_or_none()
    if assignment is None:
        raise NotFound("Lead not found")

    now = datetime.now(timezone.utc)
    if status is not None:
        assignment.status = status
        if status == "viewed" and assignment.viewed_at is None:
            assignment.viewed_at = now
        if status == "contacted" and assignment.contacted_at is None:
            assignment.contacted_at = now
    if notes is not None:
        assignment.notes = notes
    if quoted_price is not None:
        assignment.quoted_price = quoted_price
    session.flush()
    return assignment


def archive_quote(session: Session, lead_id: uuid.UUID) -> Quote:
    quote = session.get(Quote, lead_id, with_for_update=True)
    if quote is None:
        raise NotFound("Lead not found")
    quote.status = "archived"
    session.flush()
    return quote
