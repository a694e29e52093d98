"""Duplicate business resolution.

Imports created the same listing several times. Businesses are grouped by an
identity key; within a group the survivor is the first member by

    is_claimed desc, is_featured desc, reviews desc, created_at asc

The survivor takes the first non-null email/phone/website (group order), the
highest rating and review count, and the OR of the claimed/featured flags.
Every relation registered with ``register_dependent`` is re-pointed at the
survivor before the duplicates are deleted, all inside one savepoint per group.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .claims import expired_state_clause
from .models import Business, BusinessSubscription, ClaimCampaign, LeadAssignment, LeadReveal, Quote

logger = logging.getLogger(__name__)


class IdentityKey(str, Enum):
    NAME_LOCATION = "name_location"
    EMAIL_LOCATION = "email_location"


KEY_COLUMNS = {
    IdentityKey.NAME_LOCATION: ("name", "city", "state", "zipcode"),
    IdentityKey.EMAIL_LOCATION: ("email", "city", "state", "zipcode"),
}

SURVIVOR_ORDER = (
    Business.is_claimed.desc(),
    Business.is_featured.desc(),
    Business.reviews.desc(),
    Business.created_at.asc(),
    Business.id.asc(),
)

FIRST_NON_NULL_FIELDS = ("email", "phone", "website")


def _key_filters(key: IdentityKey) -> list:
    if key is IdentityKey.NAME_LOCATION:
        return [Business.name.isnot(None), Business.city.isnot(None), Business.state.isnot(None)]
    return [Business.email.isnot(None), Business.email != ""]


def survivor_sort_key(business) -> tuple:
    created = business.created_at
    return (
        not business.is_claimed,
        not business.is_featured,
        -(business.reviews or 0),
        created.timestamp() if created is not None else float("inf"),
        str(business.id),
    )


def order_group(members: list) -> list:
    return sorted(members, key=survivor_sort_key)


def merged_fields(members: list) -> dict:
    """Field values the survivor ends up with. ``members`` must be in survivor order."""
    merged: dict = {}
    for name in FIRST_NON_NULL_FIELDS:
        merged[name] = next((getattr(m, name) for m in members if getattr(m, name)), None)
    ratings = [m.rating for m in members if m.rating is not None]
    merged["rating"] = max(ratings) if ratings else None
    merged["reviews"] = max((m.reviews or 0) for m in members)
    merged["is_claimed"] = any(m.is_claimed for m in members)
    merged["is_featured"] = any(m.is_featured for m in members)
    windows = [m.featured_until for m in members if m.featured_until is not None]
    merged["featured_until"] = max(windows) if windows else None
    return merged


@dataclass
class DuplicateGroup:
    key: tuple
    members: list[Business]

    @property
    def survivor(self) -> Business:
        return self.members[0]

    @property
    def duplicates(self) -> list[Business]:
        return self.members[1:]


@dataclass
class MergeSummary:
    identity_key: str
    groups: int = 0
    survivors: list[str] = field(default_factory=list)
    deleted: int = 0
    repointed: dict[str, int] = field(default_factory=dict)
    errors: list[dict] = field(default_factory=list)


# name -> fn(session, survivor, duplicate_ids, now) -> rows re-pointed
Repointer = Callable[[Session, Business, list[uuid.UUID], datetime], int]
_DEPENDENTS: dict[str, Repointer] = {}


def register_dependent(name: str) -> Callable[[Repointer], Repointer]:
    """Register a relation that references businesses.id and must follow a merge."""

    def decorator(fn: Repointer) -> Repointer:
        _DEPENDENTS[name] = fn
        return fn

    return decorator


def dependent_relations() -> list[str]:
    return list(_DEPENDENTS)


def _repoint_unique(
    session: Session,
    model,
    scope_column: str,
    order_column,
    survivor_id: uuid.UUID,
    duplicate_ids: list[uuid.UUID],
) -> int:
    """Re-point rows that are unique per (scope, business).

    The survivor's own row wins a collision, then the oldest duplicate row;
    the losers are deleted first so the update cannot trip the constraint.
    """
    scope = getattr(model, scope_column)
    rows = session.execute(
        select(model.id, scope, model.business_id)
        .where(model.business_id.in_([survivor_id, *duplicate_ids]))
        .order_by((model.business_id == survivor_id).desc(), order_column, model.id)
    ).all()

    seen: set = set()
    drop: list[uuid.UUID] = []
    move: list[uuid.UUID] = []
    for row_id, scope_value, business_id in rows:
        if scope_value in seen:
            drop.append(row_id)
            continue
        seen.add(scope_value)
        if business_id != survivor_id:
            move.append(row_id)

    if drop:
        session.execute(delete(model).where(model.id.in_(drop)).execution_options(synchronize_session=False))
    if move:
        session.execute(
            update(model).where(model.id.in_(move)).values(business_id=survivor_id).execution_options(synchronize_session=False)
        )
    return len(move)


@register_dependent("claim_campaigns")
def _repoint_claim_campaigns(session: Session, survivor: Business, duplicate_ids: list[uuid.UUID], now: datetime) -> int:
    open_rows = session.execute(
        select(ClaimCampaign.id)
        .where(ClaimCampaign.business_id.in_([survivor.id, *duplicate_ids]))
        .where(ClaimCampaign.closed_at.is_(None))
        .order_by((ClaimCampaign.business_id == survivor.id).desc(), ClaimCampaign.created_at.desc(), ClaimCampaign.id)
    ).scalars().all()

    # One open campaign may survive, and none once the merged listing is claimed.
    keep = None if survivor.is_claimed or not open_rows else open_rows[0]
    to_close = [campaign_id for campaign_id in open_rows if campaign_id != keep]
    if to_close:
        session.execute(
            update(ClaimCampaign)
            .where(ClaimCampaign.id.in_(to_close))
            .values(
                state=expired_state_clause(),
                closed_at=now,
                expires_at=func.least(ClaimCampaign.expires_at, now),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )

    result = session.execute(
        update(ClaimCampaign)
        .where(ClaimCampaign.business_id.in_(duplicate_ids))
        .values(business_id=survivor.id, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


@register_dependent("quotes")
def _repoint_quotes(session: Session, survivor: Business, duplicate_ids: list[uuid.UUID], now: datetime) -> int:
    result = session.execute(
        update(Quote)
        .where(Quote.business_id.in_(duplicate_ids))
        .values(business_id=survivor.id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


@register_dependent("lead_reveals")
def _repoint_lead_reveals(session: Session, survivor: Business, duplicate_ids: list[uuid.UUID], now: datetime) -> int:
    return _repoint_unique(session, LeadReveal, "lead_id", LeadReveal.revealed_at, survivor.id, duplicate_ids)


@register_dependent("lead_assignments")
def _repoint_lead_assignments(session: Session, survivor: Business, duplicate_ids: list[uuid.UUID], now: datetime) -> int:
    return _repoint_unique(session, LeadAssignment, "lead_id", LeadAssignment.assigned_at, survivor.id, duplicate_ids)


@register_dependent("business_subscriptions")
def _repoint_subscriptions(session: Session, survivor: Business, duplicate_ids: list[uuid.UUID], now: datetime) -> int:
    """Fold every balance in the group into one subscription owned by the survivor."""
    subscriptions = session.execute(
        select(BusinessSubscription)
        .where(BusinessSubscription.business_id.in_([survivor.id, *duplicate_ids]))
        .order_by((BusinessSubscription.business_id == survivor.id).desc(), BusinessSubscription.lead_credits.desc())
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalars().all()
    if not subscriptions:
        return 0

    keeper, rest = subscriptions[0], subscriptions[1:]
    if rest:
        keeper.lead_credits += sum(sub.lead_credits for sub in rest)
        keeper.leads_received += sum(sub.leads_received for sub in rest)
        for sub in rest:
            session.delete(sub)
        session.flush()

    moved = 0
    if keeper.business_id != survivor.id:
        keeper.business_id = survivor.id
        moved = 1
    session.flush()
    return moved + len(rest)


def find_groups(session: Session, key: IdentityKey) -> list[DuplicateGroup]:
    key = IdentityKey(key)
    columns = [getattr(Business, name) for name in KEY_COLUMNS[key]]

    dup_keys = (
        select(*columns)
        .where(*_key_filters(key))
        .group_by(*columns)
        .having(func.count() > 1)
        .subquery()
    )
    join_on = and_(*[column.is_not_distinct_from(dup_keys.c[column.key]) for column in columns])
    stmt = select(Business).join(dup_keys, join_on).order_by(*columns, *SURVIVOR_ORDER)

    groups: list[DuplicateGroup] = []
    for business in session.execute(stmt).scalars().all():
        group_key = tuple(getattr(business, name) for name in KEY_COLUMNS[key])
        if groups and groups[-1].key == group_key:
            groups[-1].members.append(business)
        else:
            groups.append(DuplicateGroup(key=group_key, members=[business]))
    return [group for group in groups if len(group.members) > 1]


def _describe(business: Business) -> dict:
    return {
        "id": str(business.id),
        "name": business.name,
        "email": business.email,
        "phone": business.phone,
        "city": business.city,
        "state": business.state,
        "zipcode": business.zipcode,
        "is_claimed": business.is_claimed,
        "is_featured": business.is_featured,
        "reviews": business.reviews,
        "created_at": business.created_at.isoformat() if business.created_at else None,
    }


def preview(session: Session, key: IdentityKey) -> list[dict]:
    """Dry run: what ``apply`` would merge. Reads only."""
    report = []
    for group in find_groups(session, key):
        merged = merged_fields(group.members)
        report.append(
            {
                "key": list(group.key),
                "survivor": _describe(group.survivor),
                "duplicates": [_describe(member) for member in group.duplicates],
                "merged": {
                    **merged,
                    "featured_until": merged["featured_until"].isoformat() if merged["featured_until"] else None,
                },
            }
        )
    return report


def _merge_group(session: Session, group: DuplicateGroup, now: datetime) -> tuple[uuid.UUID, list[uuid.UUID], dict[str, int]]:
    ids = [member.id for member in group.members]
    with session.begin_nested():
        members = session.execute(
            select(Business)
            .where(Business.id.in_(ids))
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        members = order_group(members)
        survivor, duplicates = members[0], members[1:]
        duplicate_ids = [member.id for member in duplicates]
        if not duplicate_ids:
            return survivor.id, [], {}

        for name, value in merged_fields(members).items():
            setattr(survivor, name, value)
        session.flush()

        counts = {name: repoint(session, survivor, duplicate_ids, now) for name, repoint in _DEPENDENTS.items()}
        for duplicate in duplicates:
            session.expunge(duplicate)
        session.execute(delete(Business).where(Business.id.in_(duplicate_ids)).execution_options(synchronize_session=False))
    return survivor.id, duplicate_ids, counts


def merge(session: Session, group: DuplicateGroup, now: Optional[datetime] = None) -> uuid.UUID:
    survivor_id, _, _ = _merge_group(session, group, now or datetime.now(timezone.utc))
    return survivor_id


def apply(session: Session, key: IdentityKey, now: Optional[datetime] = None) -> MergeSummary:
    """Merge every duplicate group for ``key``. A failing group is rolled back and reported."""
    key = IdentityKey(key)
    now = now or datetime.now(timezone.utc)
    summary = MergeSummary(identity_key=key.value, repointed={name: 0 for name in _DEPENDENTS})

    for group in find_groups(session, key):
        expected_survivor = str(group.survivor.id)
        try:
            survivor_id, deleted_ids, counts = _merge_group(session, group, now)
        except SQLAlchemyError as exc:
            logger.warning("Merge of group %s failed: %s", group.key, exc)
            summary.errors.append({"key": list(group.key), "survivor_id": expected_survivor, "error": str(exc)})
            continue
        summary.groups += 1
        summary.survivors.append(str(survivor_id))
        summary.deleted += len(deleted_ids)
        for name, count in counts.items():
            summary.repointed[name] = summary.repointed.get(name, 0) + count

    logger.info(
        "Merged %d %s groups, deleted %d duplicates, %d failed",
        summary.groups,
        key.value,
        summary.deleted,
        len(summary.errors),
    )
    return summary
