from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from starlette.middleware.base import BaseHTTPMiddleware

from .auth import Identity, require_admin, require_business
from .claims import FunnelEvent, campaign_stats, create_business, lookup_by_token, record_event
from .config import load_config
from .db import session_scope
from .dedupe import IdentityKey
from .errors import (
    AlreadyClaimed,
    ConfigurationError,
    DuplicateConstraint,
    Expired,
    Forbidden,
    InsufficientCredits,
    LeadEngineError,
    NotFound,
    ValidationError,
)
from .geo import SORT_STRATEGIES, Location, service_area_labels
from .metrics import collect_metrics
from .models import LEAD_STATUSES, JobRun, Quote
from .outreach import claim_url, extract_claim_token, parse_event_name, verify_signature
from .reveals import credit_business, list_business_leads, reveal
from .routing import archive_quote, create_quote, find_serving_businesses, route, update_assignment_status
from .workers.claim_tokens import backfill as backfill_auto_campaigns
from .workers.claim_tokens import expire as expire_claim_campaigns
from .workers.claim_tokens import issue_tokens
from .workers.consolidate_contacts import run_batch as consolidate_contacts
from .workers.merge_duplicates import run as merge_duplicates

logger = logging.getLogger(__name__)

MAX_BULK_BUSINESSES = 1000

# Most specific first; the first match wins.
ERROR_STATUS = (
    (InsufficientCredits, 402),
    (NotFound, 404),
    (Expired, 410),
    (AlreadyClaimed, 409),
    (DuplicateConstraint, 409),
    (ValidationError, 422),
    (Forbidden, 403),
    (ConfigurationError, 500),
)

TRACK_ACTIONS = {
    "email_opened": FunnelEvent.OPENED,
    "link_clicked": FunnelEvent.CLICKED,
    "account_created": FunnelEvent.ACCOUNT_CREATED,
    "claimed": FunnelEvent.CLAIMED,
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'self'"
        return response


def _parse_origins() -> list[str]:
    raw = os.getenv(
        "FRONTEND_ORIGINS",
        ",".join(
            [
                "http://localhost:3000",
                "http://127.0.0.1:3000",
                "http://localhost:5173",
                "http://127.0.0.1:5173",
            ]
        ),
    )
    return [entry.strip() for entry in raw.split(",") if entry.strip()]


def status_for_error(exc: LeadEngineError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 400


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class QuoteRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    customer_name: str = Field(..., min_length=1, max_length=200)
    customer_email: str = Field(..., min_length=3, max_length=320)
    customer_phone: Optional[str] = Field(None, max_length=50)
    service_type: str = Field(..., min_length=1, max_length=100)
    project_description: Optional[str] = Field(None, max_length=5000)
    service_address: Optional[str] = Field(None, max_length=300)
    service_city: Optional[str] = Field(None, max_length=100)
    service_state: Optional[str] = Field(None, max_length=50)
    service_zipcode: Optional[str] = Field(None, max_length=20)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    business_id: Optional[uuid.UUID] = None
    source: Optional[str] = Field(None, max_length=50)


class AssignmentUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    status: Optional[str] = Field(None, max_length=20)
    notes: Optional[str] = Field(None, max_length=5000)
    quoted_price: Optional[Decimal] = Field(None, ge=0, max_digits=10, decimal_places=2)


class TrackRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    action: Literal["email_opened", "link_clicked", "account_created", "claimed"]
    user_id: Optional[uuid.UUID] = None


class CompleteClaimRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    user_id: Optional[uuid.UUID] = None


class CampaignIssueRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    business_ids: list[uuid.UUID] = Field(..., min_length=1, max_length=MAX_BULK_BUSINESSES)
    campaign_name: Optional[str] = Field(None, max_length=200)
    expires_in_days: Optional[int] = Field(None, ge=1, le=3650)


class BatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    limit: Optional[int] = Field(None, ge=1, le=100000)


class DuplicateApplyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    key: IdentityKey = IdentityKey.NAME_LOCATION


class BusinessCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    name: str = Field(..., min_length=1, max_length=300)
    category: Optional[str] = Field(None, max_length=100)
    address: Optional[str] = Field(None, max_length=300)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=50)
    zipcode: Optional[str] = Field(None, max_length=20)
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    phone: Optional[str] = Field(None, max_length=50)
    email: Optional[str] = Field(None, max_length=2000)
    website: Optional[str] = Field(None, max_length=500)
    is_verified: bool = False
    service_radius_miles: Optional[int] = Field(None, ge=0, le=500)
    service_zipcodes: list[str] = Field(default_factory=list, max_length=500)
    service_areas: list = Field(default_factory=list, max_length=500)


class CreditRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")
    business_id: uuid.UUID
    credits: int = Field(..., ge=1, le=100000)


def _campaign_payload(campaign) -> dict:
    return {
        "id": str(campaign.id),
        "business_id": str(campaign.business_id),
        "state": campaign.state,
        "claim_url": claim_url(campaign.claim_token),
        "expires_at": _iso(campaign.expires_at),
        "claimed_at": _iso(campaign.claimed_at),
        "closed_at": _iso(campaign.closed_at),
    }


def _business_payload(business) -> dict:
    return {
        "id": str(business.id),
        "name": business.name,
        "category": business.category,
        "city": business.city,
        "state": business.state,
        "zipcode": business.zipcode,
        "phone": business.phone,
        "website": business.website,
        "rating": business.rating,
        "reviews": business.reviews,
        "is_claimed": business.is_claimed,
        "is_verified": business.is_verified,
        "is_featured": business.is_featured,
        "service_radius_miles": business.service_radius_miles,
        "service_areas": service_area_labels(business.service_areas),
    }


def _route_payload(quote: Quote, result) -> dict:
    return {
        "lead_id": str(quote.id),
        "status": quote.status,
        "considered": result.considered,
        "matched": result.matched,
        "assigned": [str(assignment.business_id) for assignment in result.assignments],
    }


def create_app() -> FastAPI:
    app = FastAPI(title="Lead Engine API", version="0.1.0")

    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_parse_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-Business-Id"],
    )

    @app.exception_handler(LeadEngineError)
    async def handle_engine_error(_: Request, exc: LeadEngineError) -> JSONResponse:
        status_code = status_for_error(exc)
        if status_code >= 500:
            logger.error("Request failed: %s", exc)
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/api/metrics")
    def api_metrics() -> dict:
        return collect_metrics()

    @app.get("/api/jobs")
    def api_jobs(limit: int = Query(default=50, ge=1, le=500)) -> list[dict]:
        with session_scope() as session:
            rows = session.execute(
                select(JobRun).order_by(JobRun.started_at.desc()).limit(limit)
            ).scalars().all()
        return [
            {
                "id": str(row.id),
                "job_name": row.job_name,
                "scope": row.scope,
                "status": row.status,
                "started_at": _iso(row.started_at),
                "finished_at": _iso(row.finished_at),
                "processed_count": row.processed_count,
                "details": row.details,
                "error": row.error,
            }
            for row in rows
        ]

    # Public quote intake and directory

    @app.post("/api/quotes", status_code=201)
    def api_create_quote(payload: QuoteRequest) -> dict:
        with session_scope() as session:
            quote, result = create_quote(session, payload.model_dump())
            return _route_payload(quote, result)

    @app.get("/api/businesses/serving")
    def api_serving_businesses(
        city: Optional[str] = Query(default=None, max_length=100),
        state: Optional[str] = Query(default=None, max_length=50),
        zipcode: Optional[str] = Query(default=None, max_length=20),
        latitude: Optional[float] = Query(default=None, ge=-90, le=90),
        longitude: Optional[float] = Query(default=None, ge=-180, le=180),
        sort: str = Query(default="featured_newest"),
        limit: int = Query(default=50, ge=1, le=200),
    ) -> list[dict]:
        if sort not in SORT_STRATEGIES:
            raise HTTPException(status_code=422, detail=f"sort must be one of {sorted(SORT_STRATEGIES)}")
        location = Location(city=city, state=state, zipcode=zipcode, latitude=latitude, longitude=longitude)
        with session_scope() as session:
            businesses = find_serving_businesses(session, location, strategy=sort, limit=limit)
            return [_business_payload(business) for business in businesses]

    # Business dashboard

    @app.get("/api/dealer/leads")
    def api_dealer_leads(
        status: Optional[str] = Query(default=None, max_length=20),
        include_archived: bool = Query(default=False),
        limit: int = Query(default=100, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
        identity: Identity = Depends(require_business),
    ) -> list[dict]:
        if status is not None and status not in LEAD_STATUSES:
            raise HTTPException(status_code=422, detail=f"Unknown status {status!r}")
        with session_scope() as session:
            return list_business_leads(
                session,
                identity.id,
                status=status,
                include_archived=include_archived,
                limit=limit,
                offset=offset,
            )

    @app.post("/api/dealer/leads/{lead_id}/reveal")
    def api_reveal_lead(lead_id: uuid.UUID, identity: Identity = Depends(require_business)) -> dict:
        with session_scope() as session:
            result = reveal(session, lead_id, identity.id)
        return {
            "lead_id": str(lead_id),
            "contact": result.contact,
            "credits_remaining": result.credits_remaining,
            "charged": result.charged,
        }

    @app.patch("/api/dealer/leads/{lead_id}")
    def api_update_lead(
        lead_id: uuid.UUID,
        payload: AssignmentUpdateRequest,
        identity: Identity = Depends(require_business),
    ) -> dict:
        with session_scope() as session:
            assignment = update_assignment_status(
                session,
                lead_id,
                identity.id,
                status=payload.status,
                notes=payload.notes,
                quoted_price=payload.quoted_price,
            )
            return {
                "lead_id": str(assignment.lead_id),
                "status": assignment.status,
                "notes": assignment.notes,
                "quoted_price": float(assignment.quoted_price) if assignment.quoted_price is not None else None,
                "viewed_at": _iso(assignment.viewed_at),
                "contacted_at": _iso(assignment.contacted_at),
            }

    # Claim flow

    @app.get("/api/claim/{token}")
    def api_claim_lookup(token: str) -> dict:
        with session_scope() as session:
            business, campaign = lookup_by_token(session, token)
            return {
                "business": _business_payload(business),
                "campaign": _campaign_payload(campaign),
            }

    @app.post("/api/claim/{token}/track")
    def api_claim_track(token: str, payload: TrackRequest) -> dict:
        with session_scope() as session:
            campaign = record_event(session, token, TRACK_ACTIONS[payload.action], user_id=payload.user_id)
            return {"success": True, "state": campaign.state}

    @app.post("/api/claim/{token}/complete")
    def api_claim_complete(token: str, payload: CompleteClaimRequest) -> dict:
        with session_scope() as session:
            campaign = record_event(session, token, FunnelEvent.CLAIMED, user_id=payload.user_id)
            return _campaign_payload(campaign)

    @app.post("/api/webhooks/outreach")
    async def api_outreach_webhook(
        request: Request,
        x_outreach_signature: Optional[str] = Header(default=None, alias="X-Outreach-Signature"),
    ) -> dict:
        body = await request.body()
        secret = load_config().outreach_webhook_secret
        if secret and not verify_signature(body, x_outreach_signature, secret):
            raise HTTPException(status_code=401, detail="Invalid webhook signature")
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be JSON") from None
        if not isinstance(payload, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")

        event = parse_event_name(payload.get("type") or payload.get("event"))
        if event is None:
            return {"success": True, "ignored": "unknown event"}
        token = extract_claim_token(payload)
        if not token:
            logger.info("Outreach %s event without a claim token ignored", event.value)
            return {"success": True, "ignored": "no claim token"}

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        email = data.get("email") or data.get("to") or payload.get("email")
        if isinstance(email, list):
            email = email[0] if email else None
        try:
            with session_scope() as session:
                campaign = record_event(session, token, event, email=email, details={"source": "webhook"})
                state = campaign.state
        except (NotFound, Expired, AlreadyClaimed) as exc:
            # Acknowledge so the sender stops retrying; the event is not actionable.
            logger.warning("Outreach %s event for token %s ignored: %s", event.value, token, exc)
            return {"success": True, "ignored": str(exc)}
        return {"success": True, "event": event.value, "state": state}

    # Admin

    @app.post("/api/admin/businesses", status_code=201, dependencies=[Depends(require_admin)])
    def api_create_business(payload: BusinessCreateRequest) -> dict:
        fields = payload.model_dump(exclude_none=True)
        if "service_radius_miles" not in fields:
            fields["service_radius_miles"] = load_config().default_service_radius_miles
        with session_scope() as session:
            business, campaign = create_business(session, **fields)
            return {
                "business": _business_payload(business),
                "campaign": _campaign_payload(campaign) if campaign is not None else None,
            }

    @app.post("/api/admin/quotes/{lead_id}/route", dependencies=[Depends(require_admin)])
    def api_route_quote(lead_id: uuid.UUID) -> dict:
        with session_scope() as session:
            quote = session.get(Quote, lead_id)
            if quote is None:
                raise NotFound("Lead not found")
            return _route_payload(quote, route(session, quote))

    @app.post("/api/admin/quotes/{lead_id}/archive", dependencies=[Depends(require_admin)])
    def api_archive_quote(lead_id: uuid.UUID) -> dict:
        with session_scope() as session:
            quote = archive_quote(session, lead_id)
            return {"lead_id": str(quote.id), "status": quote.status}

    @app.post("/api/admin/claim-campaigns", dependencies=[Depends(require_admin)])
    def api_issue_campaigns(payload: CampaignIssueRequest) -> dict:
        return issue_tokens(
            payload.business_ids,
            campaign_name=payload.campaign_name,
            expires_in_days=payload.expires_in_days,
        )

    @app.get("/api/admin/claim-campaigns/stats", dependencies=[Depends(require_admin)])
    def api_campaign_stats() -> dict:
        with session_scope() as session:
            return campaign_stats(session)

    @app.post("/api/admin/claim-campaigns/expire", dependencies=[Depends(require_admin)])
    def api_expire_campaigns() -> dict:
        return expire_claim_campaigns()

    @app.post("/api/admin/claim-campaigns/backfill", dependencies=[Depends(require_admin)])
    def api_backfill_campaigns(payload: BatchRequest) -> dict:
        return backfill_auto_campaigns(limit=payload.limit)

    @app.post("/api/admin/contacts/consolidate", dependencies=[Depends(require_admin)])
    def api_consolidate_contacts(payload: BatchRequest) -> dict:
        return consolidate_contacts(limit=payload.limit)

    @app.get("/api/admin/duplicates", dependencies=[Depends(require_admin)])
    def api_preview_duplicates(key: IdentityKey = Query(default=IdentityKey.NAME_LOCATION)) -> dict:
        return merge_duplicates(key, execute=False)

    @app.post("/api/admin/duplicates/apply", dependencies=[Depends(require_admin)])
    def api_apply_duplicates(payload: DuplicateApplyRequest) -> dict:
        return merge_duplicates(payload.key, execute=True)

    @app.post("/api/billing/credits", dependencies=[Depends(require_admin)])
    def api_credit_business(payload: CreditRequest) -> dict:
        with session_scope() as session:
            balance = credit_business(session, payload.business_id, payload.credits)
        return {"business_id": str(payload.business_id), "lead_credits": balance}

    return app


app = create_app()
