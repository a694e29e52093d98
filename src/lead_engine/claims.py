"""Claim campaigns: one outreach token per business and its email funnel.

A campaign moves created -> sent -> opened -> clicked -> account_created ->
claimed. Expired, bounced and unsubscribed are exits available from any
state short of claimed. Every funnel event is appended once to
``claim_campaign_events``; the matching timestamp column on the campaign is
written with COALESCE semantics and ``state`` caches the derived position.

A campaign is "open" while ``closed_at`` is NULL. Claiming or expiring closes
it, and a partial unique index allows one open campaign per business.
"""
from __future__ import annotations

import logging
import secrets
import string
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Iterable, Optional

from sqlalchemy import case, exists, func, not_, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .config import MIN_CLAIM_TOKEN_LENGTH, load_config
from .contacts import attach_contacts, normalize_emails
from .errors import AlreadyClaimed, CampaignExists, ConfigurationError, Expired, NotFound
from .models import Business, ClaimCampaign, ClaimCampaignEvent, ClaimContact
from .notifications import notify_configuration_error

logger = logging.getLogger(__name__)

TOKEN_ALPHABET = string.ascii_lowercase + string.digits
AUTO_CAMPAIGN_NAME = "Auto-Generated"
MANUAL_CAMPAIGN_NAME = "Manual Campaign"


class ClaimState(str, Enum):
    CREATED = "created"
    SENT = "sent"
    OPENED = "opened"
    CLICKED = "clicked"
    ACCOUNT_CREATED = "account_created"
    CLAIMED = "claimed"
    EXPIRED = "expired"
    BOUNCED = "bounced"
    UNSUBSCRIBED = "unsubscribed"


class FunnelEvent(str, Enum):
    SENT = "sent"
    OPENED = "opened"
    CLICKED = "clicked"
    ACCOUNT_CREATED = "account_created"
    CLAIMED = "claimed"
    BOUNCED = "bounced"
    UNSUBSCRIBED = "unsubscribed"


PROGRESSION = (
    ClaimState.CREATED,
    ClaimState.SENT,
    ClaimState.OPENED,
    ClaimState.CLICKED,
    ClaimState.ACCOUNT_CREATED,
    ClaimState.CLAIMED,
)
TERMINAL_STATES = frozenset({ClaimState.CLAIMED, ClaimState.EXPIRED, ClaimState.BOUNCED, ClaimState.UNSUBSCRIBED})
SIDE_EXITS = frozenset({ClaimState.BOUNCED, ClaimState.UNSUBSCRIBED})

EVENT_TIMESTAMPS = {
    FunnelEvent.SENT: "email_sent_at",
    FunnelEvent.OPENED: "email_opened_at",
    FunnelEvent.CLICKED: "link_clicked_at",
    FunnelEvent.ACCOUNT_CREATED: "account_created_at",
    FunnelEvent.CLAIMED: "claimed_at",
    FunnelEvent.BOUNCED: "email_bounced_at",
    FunnelEvent.UNSUBSCRIBED: "email_unsubscribed_at",
}
CONTACT_TIMESTAMPS = {
    FunnelEvent.SENT: "email_sent_at",
    FunnelEvent.OPENED: "email_opened_at",
    FunnelEvent.CLICKED: "link_clicked_at",
    FunnelEvent.BOUNCED: "email_bounced_at",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_state(state, event) -> ClaimState:
    """State after ``event``. Never moves backwards.

    Claimed and expired absorb everything. A bounced or unsubscribed campaign
    only moves again when the owner claims through the still-valid link.
    """
    state = ClaimState(state)
    target = ClaimState(FunnelEvent(event).value)
    if state in SIDE_EXITS:
        return ClaimState.CLAIMED if target is ClaimState.CLAIMED else state
    if state in TERMINAL_STATES:
        return state
    if target in SIDE_EXITS:
        return target
    if PROGRESSION.index(target) > PROGRESSION.index(state):
        return target
    return state


def generate_token(
    exists_fn: Callable[[str], bool],
    length: int = MIN_CLAIM_TOKEN_LENGTH,
    max_attempts: int = 100,
) -> str:
    length = max(length, MIN_CLAIM_TOKEN_LENGTH)
    for _ in range(max_attempts):
        token = "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))
        if not exists_fn(token):
            return token
    raise ConfigurationError(f"Could not generate a unique claim token after {max_attempts} attempts")


def _token_taken(session: Session) -> Callable[[str], bool]:
    def check(token: str) -> bool:
        return bool(session.execute(select(exists().where(ClaimCampaign.claim_token == token))).scalar())

    return check


def expired_state_clause():
    return case(
        (ClaimCampaign.state.in_([s.value for s in TERMINAL_STATES]), ClaimCampaign.state),
        else_=ClaimState.EXPIRED.value,
    )


def _close_stale_campaigns(session: Session, business_id: uuid.UUID, now: datetime) -> int:
    result = session.execute(
        update(ClaimCampaign)
        .where(ClaimCampaign.business_id == business_id)
        .where(ClaimCampaign.closed_at.is_(None))
        .where(ClaimCampaign.claimed_at.is_(None))
        .where(ClaimCampaign.expires_at <= now)
        .values(state=expired_state_clause(), closed_at=now, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def issue_token(
    session: Session,
    business_id: uuid.UUID,
    campaign_name: Optional[str] = None,
    expires_in_days: Optional[int] = None,
    auto: bool = False,
    now: Optional[datetime] = None,
) -> ClaimCampaign:
    """Open a claim campaign for an unclaimed business.

    Raises NotFound, AlreadyClaimed, or CampaignExists when the business still
    has an open campaign. ConfigurationError means token generation is
    exhausted and is never worth retrying.
    """
    config = load_config()
    now = now or _utcnow()

    business = session.execute(
        select(Business).where(Business.id == business_id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if business is None:
        raise NotFound("Business not found")
    if business.is_claimed:
        raise AlreadyClaimed("Business already claimed")

    _close_stale_campaigns(session, business.id, now)

    if expires_in_days is None:
        expires_in_days = config.claim_auto_expiry_days if auto else config.claim_manual_expiry_days
    name = campaign_name or (AUTO_CAMPAIGN_NAME if auto else MANUAL_CAMPAIGN_NAME)

    campaign_id = None
    inserted = False
    for _ in range(config.claim_token_max_attempts):
        try:
            token = generate_token(_token_taken(session), config.claim_token_length, config.claim_token_max_attempts)
        except ConfigurationError as exc:
            logger.error("Claim token generation exhausted for business %s", business.id)
            notify_configuration_error(str(exc))
            raise
        try:
            with session.begin_nested():
                campaign_id = session.execute(
                    insert(ClaimCampaign)
                    .values(
                        id=uuid.uuid4(),
                        business_id=business.id,
                        claim_token=token,
                        campaign_name=name,
                        state=ClaimState.CREATED.value,
                        expires_at=now + timedelta(days=expires_in_days),
                    )
                    .on_conflict_do_nothing(
                        index_elements=["business_id"],
                        index_where=ClaimCampaign.closed_at.is_(None),
                    )
                    .returning(ClaimCampaign.id)
                ).scalar_one_or_none()
        except IntegrityError:
            # Another transaction took the same token between the check and the insert.
            logger.warning("Claim token collision on insert, retrying")
            continue
        inserted = True
        break

    if not inserted:
        message = f"Claim token insert kept colliding after {config.claim_token_max_attempts} attempts"
        notify_configuration_error(message)
        raise ConfigurationError(message)
    if campaign_id is None:
        raise CampaignExists(business.id)

    campaign = session.get(ClaimCampaign, campaign_id)
    attach_contacts(session, campaign.id, normalize_emails(business.email))
    logger.info("Issued claim campaign %s for business %s (%s)", campaign.id, business.id, name)
    return campaign


def issue_bulk(
    session: Session,
    business_ids: Iterable[uuid.UUID],
    campaign_name: Optional[str] = None,
    expires_in_days: Optional[int] = None,
) -> dict:
    """Admin bulk issue. Each business runs in its own savepoint; failures are collected."""
    campaigns: list[ClaimCampaign] = []
    skipped: list[dict] = []
    errors: list[dict] = []
    total = 0

    for business_id in business_ids:
        total += 1
        try:
            with session.begin_nested():
                campaigns.append(
                    issue_token(session, business_id, campaign_name=campaign_name, expires_in_days=expires_in_days)
                )
        except CampaignExists as exc:
            skipped.append({"business_id": str(business_id), "reason": str(exc)})
        except (NotFound, AlreadyClaimed) as exc:
            errors.append({"business_id": str(business_id), "error": str(exc)})

    return {
        "campaigns": campaigns,
        "skipped": skipped,
        "errors": errors,
        "summary": {
            "total": total,
            "successful": len(campaigns),
            "skipped": len(skipped),
            "failed": len(errors),
        },
    }


def ensure_auto_campaign(session: Session, business: Business) -> Optional[ClaimCampaign]:
    """Issue the long-lived auto campaign for a new unclaimed business with an email.

    Businesses that already have any campaign, or lose the race to a manual
    bulk issue, are skipped without error.
    """
    if business.is_claimed or not (business.email or "").strip():
        return None
    has_campaign = session.execute(
        select(exists().where(ClaimCampaign.business_id == business.id))
    ).scalar()
    if has_campaign:
        return None
    try:
        with session.begin_nested():
            return issue_token(session, business.id, campaign_name=AUTO_CAMPAIGN_NAME, auto=True)
    except CampaignExists:
        logger.info("Business %s already has an open campaign; auto campaign skipped", business.id)
        return None


def create_business(session: Session, **fields) -> tuple[Business, Optional[ClaimCampaign]]:
    business = Business(**fields)
    session.add(business)
    session.flush()
    return business, ensure_auto_campaign(session, business)


def backfill_auto_campaigns(session: Session, limit: Optional[int] = None) -> dict:
    has_campaign = exists().where(ClaimCampaign.business_id == Business.id)
    stmt = (
        select(Business)
        .where(Business.is_claimed.is_(False))
        .where(Business.email.isnot(None))
        .where(func.trim(Business.email) != "")
        .where(not_(has_campaign))
        .order_by(Business.created_at, Business.id)
    )
    if limit is not None:
        stmt = stmt.limit(limit)

    processed = 0
    issued = 0
    errors: list[dict] = []
    for business in session.execute(stmt).scalars().all():
        processed += 1
        try:
            if ensure_auto_campaign(session, business) is not None:
                issued += 1
        except (NotFound, AlreadyClaimed) as exc:
            errors.append({"business_id": str(business.id), "error": str(exc)})

    logger.info("Auto campaign backfill: %d businesses checked, %d campaigns issued", processed, issued)
    return {"processed": processed, "issued": issued, "errors": errors}


def _normalize_token(token: Optional[str]) -> str:
    return (token or "").strip().lower()


def lookup_by_token(session: Session, token: str, now: Optional[datetime] = None) -> tuple[Business, ClaimCampaign]:
    now = now or _utcnow()
    row = session.execute(
        select(Business, ClaimCampaign)
        .join(ClaimCampaign, ClaimCampaign.business_id == Business.id)
        .where(ClaimCampaign.claim_token == _normalize_token(token))
    ).first()
    if row is None:
        raise NotFound("This claim link is invalid")
    business, campaign = row
    if campaign.claimed_at is not None or business.is_claimed:
        raise AlreadyClaimed("This business has already been claimed")
    if now >= campaign.expires_at:
        raise Expired("This claim link has expired")
    return business, campaign


def _append_event(session: Session, campaign: ClaimCampaign, event: FunnelEvent, now: datetime, details: Optional[dict]) -> bool:
    result = session.execute(
        insert(ClaimCampaignEvent)
        .values(id=uuid.uuid4(), campaign_id=campaign.id, event_type=event.value, occurred_at=now, details=details)
        .on_conflict_do_nothing(index_elements=["campaign_id", "event_type"])
        .returning(ClaimCampaignEvent.id)
    )
    return result.first() is not None


def _touch_contact(session: Session, campaign: ClaimCampaign, event: FunnelEvent, email: str, now: datetime) -> None:
    addresses = normalize_emails(email)
    if not addresses:
        logger.info("Ignoring unusable recipient %r on campaign %s", email, campaign.id)
        return
    address = addresses[0]
    attach_contacts(session, campaign.id, [address])
    column = CONTACT_TIMESTAMPS.get(event)
    if column:
        session.execute(
            update(ClaimContact)
            .where(ClaimContact.campaign_id == campaign.id)
            .where(ClaimContact.email == address)
            .values({column: func.coalesce(getattr(ClaimContact, column), now)})
            .execution_options(synchronize_session=False)
        )
    if event is FunnelEvent.SENT and not campaign.email_sent_to:
        campaign.email_sent_to = address


def _apply_event(
    session: Session,
    campaign: ClaimCampaign,
    event: FunnelEvent,
    now: datetime,
    email: Optional[str] = None,
    user_id: Optional[uuid.UUID] = None,
    details: Optional[dict] = None,
) -> None:
    _append_event(session, campaign, event, now, details)
    column = EVENT_TIMESTAMPS[event]
    if getattr(campaign, column) is None:
        setattr(campaign, column, now)
    if user_id is not None and event in (FunnelEvent.ACCOUNT_CREATED, FunnelEvent.CLAIMED):
        if campaign.claimed_by_user_id is None:
            campaign.claimed_by_user_id = user_id
    campaign.state = next_state(campaign.state, event).value
    if email:
        _touch_contact(session, campaign, event, email, now)


def record_event(
    session: Session,
    token: str,
    event,
    email: Optional[str] = None,
    user_id: Optional[uuid.UUID] = None,
    details: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> ClaimCampaign:
    """Record a funnel event by token. Repeating an event changes nothing."""
    event = FunnelEvent(event)
    if event is FunnelEvent.CLAIMED:
        return complete_claim(session, token, user_id=user_id, now=now)

    now = now or _utcnow()
    campaign = session.execute(
        select(ClaimCampaign).where(ClaimCampaign.claim_token == _normalize_token(token)).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if campaign is None:
        raise NotFound("This claim link is invalid")
    business = session.get(Business, campaign.business_id)
    if campaign.claimed_at is not None or (business is not None and business.is_claimed):
        raise AlreadyClaimed("This business has already been claimed")
    if now >= campaign.expires_at:
        raise Expired("This claim link has expired")
    _apply_event(session, campaign, event, now, email=email, user_id=user_id, details=details)
    return campaign


def complete_claim(
    session: Session,
    token: str,
    user_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> ClaimCampaign:
    """Finish a claim: stamp claimed_at once, flip the business, close the campaign."""
    now = now or _utcnow()
    token = _normalize_token(token)

    business_id = session.execute(
        select(ClaimCampaign.business_id).where(ClaimCampaign.claim_token == token)
    ).scalar_one_or_none()
    if business_id is None:
        raise NotFound("This claim link is invalid")

    # Business before campaign, the same lock order issue_token uses.
    business = session.execute(
        select(Business).where(Business.id == business_id).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()
    campaign = session.execute(
        select(ClaimCampaign).where(ClaimCampaign.claim_token == token).with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()

    if campaign.claimed_at is not None or business.is_claimed:
        raise AlreadyClaimed("This business has already been claimed")
    if now >= campaign.expires_at:
        raise Expired("This claim link has expired")

    _apply_event(session, campaign, FunnelEvent.CLAIMED, now, user_id=user_id)
    campaign.closed_at = now
    business.is_claimed = True
    session.execute(
        update(ClaimCampaign)
        .where(ClaimCampaign.business_id == business.id)
        .where(ClaimCampaign.id != campaign.id)
        .where(ClaimCampaign.closed_at.is_(None))
        .values(closed_at=now, updated_at=func.now())
        .execution_options(synchronize_session=False)
    )
    logger.info("Business %s claimed through campaign %s", business.id, campaign.id)
    return campaign


def expire_campaigns(session: Session, now: Optional[datetime] = None) -> dict:
    """Close open campaigns that ran out, and any still open on claimed businesses."""
    now = now or _utcnow()
    expired = session.execute(
        update(ClaimCampaign)
        .where(ClaimCampaign.closed_at.is_(None))
        .where(ClaimCampaign.claimed_at.is_(None))
        .where(ClaimCampaign.expires_at <= now)
        .values(state=expired_state_clause(), closed_at=now, updated_at=func.now())
        .execution_options(synchronize_session=False)
    ).rowcount or 0

    claimed_business = exists().where(Business.id == ClaimCampaign.business_id).where(Business.is_claimed.is_(True))
    orphaned = session.execute(
        update(ClaimCampaign)
        .where(ClaimCampaign.closed_at.is_(None))
        .where(claimed_business)
        .values(closed_at=now, updated_at=func.now())
        .execution_options(synchronize_session=False)
    ).rowcount or 0

    if expired or orphaned:
        logger.info("Closed %d expired campaigns and %d campaigns on claimed businesses", expired, orphaned)
    return {"expired": expired, "closed_on_claimed": orphaned}


def campaign_stats(session: Session) -> dict:
    def count(stmt) -> int:
        return int(session.execute(stmt).scalar() or 0)

    business_with_campaign = select(func.count(func.distinct(ClaimCampaign.business_id)))
    state_rows = session.execute(
        select(ClaimCampaign.state, func.count()).group_by(ClaimCampaign.state)
    ).all()

    return {
        "total_businesses": count(select(func.count()).select_from(Business)),
        "total_unclaimed": count(select(func.count()).select_from(Business).where(Business.is_claimed.is_(False))),
        "claimed": count(select(func.count()).select_from(Business).where(Business.is_claimed.is_(True))),
        "with_email": count(
            select(func.count()).select_from(Business).where(Business.email.isnot(None)).where(Business.email != "")
        ),
        "with_tokens": count(business_with_campaign),
        "emails_sent": count(business_with_campaign.where(ClaimCampaign.email_sent_at.isnot(None))),
        "opened": count(business_with_campaign.where(ClaimCampaign.email_opened_at.isnot(None))),
        "clicked": count(business_with_campaign.where(ClaimCampaign.link_clicked_at.isnot(None))),
        "accounts_created": count(business_with_campaign.where(ClaimCampaign.account_created_at.isnot(None))),
        "open_campaigns": count(
            select(func.count()).select_from(ClaimCampaign).where(ClaimCampaign.closed_at.is_(None))
        ),
        "by_state": {state: int(total) for state, total in state_rows},
    }
