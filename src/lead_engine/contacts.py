"""Normalized claim contacts.

Imports left ``claim_campaigns.email_sent_to`` (and ``businesses.email``) holding
JSON arrays, semicolon or comma lists, quoted values and phone numbers glued to
addresses. ``normalize_emails`` turns any of those into an ordered, deduplicated
list; the first address is the primary contact.
"""
from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import exists, not_, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from .errors import ValidationError
from .models import ClaimCampaign, ClaimContact

logger = logging.getLogger(__name__)

EMAIL_SEARCH_RE = re.compile(r"([a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,})")
EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_WRAPPING_QUOTES_RE = re.compile(r"^[\"']|[\"']$")

FUNNEL_TIMESTAMPS = ("email_sent_at", "email_opened_at", "link_clicked_at", "email_bounced_at")


def _split_candidates(raw: str) -> list:
    if raw.startswith("[") and raw.endswith("]"):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return [raw]
        return parsed if isinstance(parsed, list) else [raw]
    if ";" in raw:
        return raw.split(";")
    if "," in raw and "@" in raw:
        parts = raw.split(",")
        if all("@" in part or not part.strip() for part in parts):
            return parts
    return [raw]


def _clean_candidate(candidate) -> Optional[str]:
    if not isinstance(candidate, str):
        return None
    value = candidate.strip()
    value = _WRAPPING_QUOTES_RE.sub("", value)
    value = re.sub(r"\s+", " ", value)
    match = EMAIL_SEARCH_RE.search(value)
    if match:
        value = match.group(1)
    value = value.lower()
    return value if EMAIL_RE.match(value) else None


def normalize_emails(raw: Optional[str]) -> list[str]:
    if raw is None:
        return []
    raw = str(raw).strip()
    if not raw:
        return []

    emails: list[str] = []
    for candidate in _split_candidates(raw):
        email = _clean_candidate(candidate)
        if email and email not in emails:
            emails.append(email)
    return emails


def attach_contacts(
    session: Session,
    campaign_id: uuid.UUID,
    emails: list[str],
    timestamps: Optional[dict] = None,
) -> int:
    """Insert contact rows for a campaign, skipping addresses already attached.

    The first address becomes primary unless the campaign already has one.
    Returns the number of rows inserted.
    """
    if not emails:
        return 0

    has_primary = session.execute(
        select(exists().where(ClaimContact.campaign_id == campaign_id).where(ClaimContact.is_primary.is_(True)))
    ).scalar()

    seed = {key: (timestamps or {}).get(key) for key in FUNNEL_TIMESTAMPS}
    values = [
        {
            "id": uuid.uuid4(),
            "campaign_id": campaign_id,
            "email": email,
            "is_primary": index == 0 and not has_primary,
            "is_selected": True,
            **seed,
        }
        for index, email in enumerate(emails)
    ]
    result = session.execute(
        insert(ClaimContact)
        .values(values)
        .on_conflict_do_nothing(index_elements=["campaign_id", "email"])
        .returning(ClaimContact.id)
    )
    return len(result.all())


def consolidate_campaign_contacts(session: Session, limit: Optional[int] = None) -> dict:
    """Copy legacy ``email_sent_to`` values into claim_contacts.

    Campaigns that already have contact rows are skipped, so a second run only
    picks up campaigns created since. A value with no usable address is
    reported in ``errors`` and does not stop the batch.
    """
    has_contacts = exists().where(ClaimContact.campaign_id == ClaimCampaign.id)
    stmt = (
        select(ClaimCampaign)
        .where(ClaimCampaign.email_sent_to.isnot(None))
        .where(ClaimCampaign.email_sent_to != "")
        .where(not_(has_contacts))
        .order_by(ClaimCampaign.created_at, ClaimCampaign.id)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    campaigns = session.execute(stmt).scalars().all()

    processed = 0
    inserted = 0
    multi_email = 0
    errors: list[dict] = []

    for campaign in campaigns:
        processed += 1
        try:
            with session.begin_nested():
                emails = normalize_emails(campaign.email_sent_to)
                if not emails:
                    raise ValidationError(f"No valid email address in {campaign.email_sent_to!r}")
                if len(emails) > 1:
                    multi_email += 1
                timestamps = {key: getattr(campaign, key) for key in FUNNEL_TIMESTAMPS}
                inserted += attach_contacts(session, campaign.id, emails, timestamps)
        except ValidationError as exc:
            logger.warning("Skipping campaign %s: %s", campaign.id, exc)
            errors.append({"campaign_id": str(campaign.id), "error": str(exc)})

    logger.info(
        "Consolidated contacts for %d campaigns: %d rows inserted, %d errors",
        processed,
        inserted,
        len(errors),
    )
    return {
        "processed": processed,
        "contacts_inserted": inserted,
        "multi_email_campaigns": multi_email,
        "errors": errors,
    }


@dataclass(frozen=True)
class Recipients:
    source: str
    emails: list[str]


def campaign_recipients(session: Session, campaign: ClaimCampaign) -> Recipients:
    """Selected recipients of a campaign.

    Normalized contact rows win; a campaign that was never consolidated falls
    back to parsing its legacy field.
    """
    rows = session.execute(
        select(ClaimContact.email, ClaimContact.is_selected)
        .where(ClaimContact.campaign_id == campaign.id)
        .order_by(ClaimContact.is_primary.desc(), ClaimContact.created_at, ClaimContact.email)
    ).all()
    if rows:
        return Recipients("contacts", [email for email, selected in rows if selected])
    return Recipients("legacy", normalize_emails(campaign.email_sent_to))
