"""Credit-gated lead reveal.

A business sees a lead's real contact details only after spending one credit
on it. The reveal row is unique per (lead, business); inserting it and
debiting the balance happen in one savepoint, so concurrent reveals of the
same pair charge exactly once and a re-reveal is free.
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import and_, exists, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from .errors import Forbidden, InsufficientCredits, NotFound, ValidationError
from .models import Business, BusinessSubscription, LeadAssignment, LeadReveal, Quote

logger = logging.getLogger(__name__)

MASKED_EMAIL = "hidden@masked.invalid"
MASKED_TEXT = "Hidden until revealed"


@dataclass(frozen=True)
class RevealResult:
    contact: dict
    credits_remaining: Optional[int]
    charged: bool


def mask_phone(phone: Optional[str]) -> Optional[str]:
    if phone is None:
        return None
    return re.sub(r"\d", "*", phone)


def _contact(quote: Quote) -> dict:
    return {
        "name": quote.customer_name,
        "email": quote.customer_email,
        "phone": quote.customer_phone,
        "address": quote.service_address,
    }


def _masked_contact(quote: Quote) -> dict:
    return {
        "name": quote.customer_name,
        "email": MASKED_EMAIL,
        "phone": mask_phone(quote.customer_phone),
        "address": MASKED_TEXT if quote.service_address else None,
    }


def _current_balance(session: Session, business_id: uuid.UUID) -> Optional[int]:
    return session.execute(
        select(BusinessSubscription.lead_credits).where(BusinessSubscription.business_id == business_id)
    ).scalar_one_or_none()


def reveal(session: Session, lead_id: uuid.UUID, business_id: uuid.UUID) -> RevealResult:
    quote = session.get(Quote, lead_id)
    assigned = session.execute(
        select(
            exists()
            .where(LeadAssignment.lead_id == lead_id)
            .where(LeadAssignment.business_id == business_id)
        )
    ).scalar()
    if quote is None or not assigned:
        raise NotFound("Lead not found")
    business = session.get(Business, business_id)
    if business is None or not (business.is_claimed or business.is_verified):
        raise Forbidden("Only claimed or verified businesses can reveal leads")

    with session.begin_nested():
        reveal_id = session.execute(
            insert(LeadReveal)
            .values(id=uuid.uuid4(), lead_id=lead_id, business_id=business_id, credits_used=1)
            .on_conflict_do_nothing(index_elements=["lead_id", "business_id"])
            .returning(LeadReveal.id)
        ).scalar_one_or_none()

        if reveal_id is None:
            return RevealResult(_contact(quote), _current_balance(session, business_id), charged=False)

        remaining = session.execute(
            update(BusinessSubscription)
            .where(BusinessSubscription.business_id == business_id)
            .where(BusinessSubscription.status == "active")
            .where(BusinessSubscription.lead_credits > 0)
            .values(
                lead_credits=BusinessSubscription.lead_credits - 1,
                leads_received=BusinessSubscription.leads_received + 1,
                updated_at=func.now(),
            )
            .returning(BusinessSubscription.lead_credits)
            .execution_options(synchronize_session=False)
        ).scalar_one_or_none()
        if remaining is None:
            # Leaving the savepoint on this exception discards the reveal row too.
            raise InsufficientCredits(business_id)

        session.execute(
            update(LeadAssignment)
            .where(LeadAssignment.lead_id == lead_id)
            .where(LeadAssignment.business_id == business_id)
            .where(LeadAssignment.status.in_(["new", "viewed"]))
            .values(
                status="contacted",
                contacted_at=func.coalesce(LeadAssignment.contacted_at, func.now()),
                updated_at=func.now(),
            )
            .execution_options(synchronize_session=False)
        )

    logger.info("Business %s revealed lead %s (%d credits left)", business_id, lead_id, remaining)
    return RevealResult(_contact(quote), remaining, charged=True)


def list_business_leads(
    session: Session,
    business_id: uuid.UUID,
    status: Optional[str] = None,
    include_archived: bool = False,
    limit: int = 100,
    offset: int = 0,
) -> list[dict]:
    """Leads assigned to a business, masked unless this business revealed them.

    Listing counts as viewing: assignments still ``new`` become ``viewed``.
    """
    now = datetime.now(timezone.utc)
    session.execute(
        update(LeadAssignment)
        .where(LeadAssignment.business_id == business_id)
        .where(LeadAssignment.status == "new")
        .values(
            status="viewed",
            viewed_at=func.coalesce(LeadAssignment.viewed_at, now),
            updated_at=func.now(),
        )
        .execution_options(synchronize_session=False)
    )

    revealed = (
        exists()
        .where(LeadReveal.lead_id == LeadAssignment.lead_id)
        .where(LeadReveal.business_id == LeadAssignment.business_id)
    )
    stmt = (
        select(LeadAssignment, Quote, revealed.label("revealed"))
        .join(Quote, Quote.id == LeadAssignment.lead_id)
        .where(LeadAssignment.business_id == business_id)
        .order_by(Quote.created_at.desc(), Quote.id)
        .limit(limit)
        .offset(offset)
        .execution_options(populate_existing=True)
    )
    if status:
        stmt = stmt.where(LeadAssignment.status == status)
    elif not include_archived:
        stmt = stmt.where(and_(LeadAssignment.status != "archived", Quote.status != "archived"))

    items = []
    for assignment, quote, is_revealed in session.execute(stmt).all():
        items.append(
            {
                "id": str(quote.id),
                "service_type": quote.service_type,
                "project_description": quote.project_description,
                "city": quote.service_city,
                "state": quote.service_state,
                "zipcode": quote.service_zipcode,
                "created_at": quote.created_at.isoformat() if quote.created_at else None,
                "lead_status": quote.status,
                "status": assignment.status,
                "notes": assignment.notes,
                "quoted_price": float(assignment.quoted_price) if assignment.quoted_price is not None else None,
                "viewed_at": assignment.viewed_at.isoformat() if assignment.viewed_at else None,
                "contacted_at": assignment.contacted_at.isoformat() if assignment.contacted_at else None,
                "revealed": bool(is_revealed),
                "contact": _contact(quote) if is_revealed else _masked_contact(quote),
            }
        )
    return items


def credit_business(session: Session, business_id: uuid.UUID, credits: int) -> int:
    """Billing hook: add purchased credits, creating the subscription row if needed."""
    if credits <= 0:
        raise ValidationError("credits must be positive")
    if session.get(Business, business_id) is None:
        raise NotFound("Business not found")

    stmt = insert(BusinessSubscription).values(
        id=uuid.uuid4(),
        business_id=business_id,
        lead_credits=credits,
        status="active",
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["business_id"],
        set_={
            "lead_credits": BusinessSubscription.lead_credits + stmt.excluded.lead_credits,
            "status": "active",
            "updated_at": func.now(),
        },
    ).returning(BusinessSubscription.lead_credits)
    balance = session.execute(stmt).scalar_one()
    logger.info("Credited %d lead credits to business %s (balance %d)", credits, business_id, balance)
    return balance
