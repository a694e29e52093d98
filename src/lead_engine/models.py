from __future__ import annotations

import uuid
from typing import Optional
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import ARRAY, CITEXT, JSONB, UUID

from .db import Base

LEAD_STATUSES = ("new", "viewed", "contacted", "quoted", "won", "lost", "archived")
CLAIM_STATES = (
    "created",
    "sent",
    "opened",
    "clicked",
    "account_created",
    "claimed",
    "expired",
    "bounced",
    "unsubscribed",
)


def _in_clause(column: str, values: tuple[str, ...]) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


class Business(Base):
    __tablename__ = "businesses"
    __table_args__ = (
        Index("businesses_name_location_idx", "name", "city", "state", "zipcode"),
        Index("businesses_email_location_idx", "email", "city", "state", "zipcode"),
        Index("businesses_state_city_idx", "state", "city"),
        Index("businesses_claimed_verified_idx", "is_claimed", "is_verified"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(Text)
    address: Mapped[Optional[str]] = mapped_column(Text)
    city: Mapped[Optional[str]] = mapped_column(Text)
    state: Mapped[Optional[str]] = mapped_column(Text)
    zipcode: Mapped[Optional[str]] = mapped_column(Text)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    phone: Mapped[Optional[str]] = mapped_column(Text)
    # Legacy single-value field; imports sometimes stuffed several addresses in here.
    email: Mapped[Optional[str]] = mapped_column(Text)
    website: Mapped[Optional[str]] = mapped_column(Text)
    rating: Mapped[Optional[float]] = mapped_column(Float)
    reviews: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    is_claimed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_featured: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    featured_until: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    service_radius_miles: Mapped[int] = mapped_column(Integer, nullable=False, default=25, server_default="25")
    service_zipcodes: Mapped[list[str]] = mapped_column(ARRAY(Text), nullable=False, default=list, server_default="{}")
    service_areas: Mapped[list] = mapped_column(JSONB, nullable=False, default=list, server_default=text("'[]'::jsonb"))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    campaigns: Mapped[list[ClaimCampaign]] = relationship("ClaimCampaign", back_populates="business", passive_deletes=True)
    subscription: Mapped[Optional[BusinessSubscription]] = relationship(
        "BusinessSubscription", back_populates="business", uselist=False, passive_deletes=True
    )


class BusinessSubscription(Base):
    """Credit balance written by the billing collaborator and spent by lead reveals."""

    __tablename__ = "business_subscriptions"
    __table_args__ = (
        CheckConstraint("lead_credits >= 0", name="business_subscriptions_credits_nonneg_chk"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    plan: Mapped[str] = mapped_column(Text, nullable=False, default="pay_per_lead", server_default="pay_per_lead")
    status: Mapped[str] = mapped_column(Text, nullable=False, default="active", server_default="active")
    lead_credits: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    leads_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    business: Mapped[Business] = relationship("Business", back_populates="subscription")


class Quote(Base):
    __tablename__ = "quotes"
    __table_args__ = (
        CheckConstraint(_in_clause("status", LEAD_STATUSES), name="quotes_status_chk"),
        Index("quotes_status_idx", "status"),
        Index("quotes_business_idx", "business_id"),
        Index("quotes_created_at_idx", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_name: Mapped[str] = mapped_column(Text, nullable=False)
    customer_email: Mapped[str] = mapped_column(CITEXT, nullable=False)
    customer_phone: Mapped[Optional[str]] = mapped_column(Text)
    service_type: Mapped[str] = mapped_column(Text, nullable=False)
    project_description: Mapped[Optional[str]] = mapped_column(Text)
    service_address: Mapped[Optional[str]] = mapped_column(Text)
    service_city: Mapped[Optional[str]] = mapped_column(Text)
    service_state: Mapped[Optional[str]] = mapped_column(Text)
    service_zipcode: Mapped[Optional[str]] = mapped_column(Text)
    latitude: Mapped[Optional[float]] = mapped_column(Float)
    longitude: Mapped[Optional[float]] = mapped_column(Float)
    # Set when the customer asked one specific business for a quote.
    business_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="SET NULL"))
    status: Mapped[str] = mapped_column(Text, nullable=False, default="new", server_default="new")
    source: Mapped[str] = mapped_column(Text, nullable=False, default="website", server_default="website")
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    assignments: Mapped[list[LeadAssignment]] = relationship("LeadAssignment", back_populates="quote", passive_deletes=True)


class LeadAssignment(Base):
    __tablename__ = "lead_assignments"
    __table_args__ = (
        UniqueConstraint("lead_id", "business_id", name="lead_assignments_lead_business_uidx"),
        CheckConstraint(_in_clause("status", LEAD_STATUSES), name="lead_assignments_status_chk"),
        Index("lead_assignments_business_status_idx", "business_id", "status"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False)
    business_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="new", server_default="new")
    notes: Mapped[Optional[str]] = mapped_column(Text)
    quoted_price: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    viewed_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    contacted_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    assigned_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    quote: Mapped[Quote] = relationship("Quote", back_populates="assignments")


class LeadReveal(Base):
    __tablename__ = "lead_reveals"
    __table_args__ = (
        UniqueConstraint("lead_id", "business_id", name="lead_reveals_lead_business_uidx"),
        Index("lead_reveals_business_idx", "business_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("quotes.id", ondelete="CASCADE"), nullable=False)
    business_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    revealed_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ClaimCampaign(Base):
    __tablename__ = "claim_campaigns"
    __table_args__ = (
        CheckConstraint(_in_clause("state", CLAIM_STATES), name="claim_campaigns_state_chk"),
        # At most one open campaign per business; claimed/expired campaigns are closed.
        Index(
            "claim_campaigns_business_open_uidx",
            "business_id",
            unique=True,
            postgresql_where=text("closed_at IS NULL"),
        ),
        Index("claim_campaigns_business_idx", "business_id"),
        Index("claim_campaigns_expires_at_idx", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("businesses.id", ondelete="CASCADE"), nullable=False)
    claim_token: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    campaign_name: Mapped[Optional[str]] = mapped_column(Text)
    # Legacy free-text recipient list; claim_contacts is the normalized replacement.
    email_sent_to: Mapped[Optional[str]] = mapped_column(Text)
    state: Mapped[str] = mapped_column(Text, nullable=False, default="created", server_default="created")
    expires_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False)
    email_sent_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    email_opened_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    link_clicked_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    account_created_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    claimed_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    email_bounced_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    email_unsubscribed_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    claimed_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))
    closed_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    business: Mapped[Business] = relationship("Business", back_populates="campaigns")
    contacts: Mapped[list[ClaimContact]] = relationship(
        "ClaimContact", back_populates="campaign", cascade="all, delete-orphan", order_by="ClaimContact.created_at"
    )
    events: Mapped[list[ClaimCampaignEvent]] = relationship(
        "ClaimCampaignEvent", back_populates="campaign", cascade="all, delete-orphan", order_by="ClaimCampaignEvent.occurred_at"
    )


class ClaimCampaignEvent(Base):
    """Append-once funnel log; the campaign's state column is derived from it."""

    __tablename__ = "claim_campaign_events"
    __table_args__ = (
        UniqueConstraint("campaign_id", "event_type", name="claim_campaign_events_campaign_type_uidx"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("claim_campaigns.id", ondelete="CASCADE"), nullable=False)
    event_type: Mapped[str] = mapped_column(Text, nullable=False)
    occurred_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    details: Mapped[Optional[dict]] = mapped_column(JSONB)

    campaign: Mapped[ClaimCampaign] = relationship("ClaimCampaign", back_populates="events")


class ClaimContact(Base):
    __tablename__ = "claim_contacts"
    __table_args__ = (
        UniqueConstraint("campaign_id", "email", name="claim_contacts_campaign_email_uidx"),
        Index("claim_contacts_email_idx", "email"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    campaign_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("claim_campaigns.id", ondelete="CASCADE"), nullable=False)
    email: Mapped[str] = mapped_column(CITEXT, nullable=False)
    is_primary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    is_selected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    email_sent_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    email_opened_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    link_clicked_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    email_bounced_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    campaign: Mapped[ClaimCampaign] = relationship("ClaimCampaign", back_populates="contacts")


class JobRun(Base):
    __tablename__ = "job_runs"
    __table_args__ = (
        Index("job_runs_name_status_idx", "job_name", "status"),
        Index("job_runs_started_at_idx", "started_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    job_name: Mapped[str] = mapped_column(Text, nullable=False)
    scope: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False)
    started_at: Mapped[DateTime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    finished_at: Mapped[Optional[DateTime]] = mapped_column(DateTime(timezone=True))
    processed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    details: Mapped[Optional[dict]] = mapped_column(JSONB)
    error: Mapped[Optional[str]] = mapped_column(Text)
