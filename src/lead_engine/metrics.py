from __future__ import annotations

from sqlalchemy import case, func, or_, select

from .db import session_scope
from .models import (
    Business,
    BusinessSubscription,
    ClaimCampaign,
    ClaimContact,
    JobRun,
    LeadAssignment,
    LeadReveal,
    Quote,
)


def collect_metrics() -> dict:
    with session_scope() as session:
        business_totals = session.execute(
            select(
                func.count(Business.id),
                func.sum(case((Business.is_claimed.is_(True), 1), else_=0)),
                func.sum(case((Business.is_verified.is_(True), 1), else_=0)),
                func.sum(case((or_(Business.is_claimed.is_(True), Business.is_verified.is_(True)), 1), else_=0)),
                func.sum(case((Business.featured_until > func.now(), 1), else_=0)),
            )
        ).first()

        quote_status_rows = session.execute(
            select(Quote.status, func.count(Quote.id)).group_by(Quote.status)
        ).all()

        assignment_status_rows = session.execute(
            select(LeadAssignment.status, func.count(LeadAssignment.id)).group_by(LeadAssignment.status)
        ).all()

        unrouted_quotes = int(session.execute(
            select(func.count(Quote.id)).where(
                ~select(LeadAssignment.id).where(LeadAssignment.lead_id == Quote.id).exists()
            )
        ).scalar() or 0)

        reveal_totals = session.execute(
            select(func.count(LeadReveal.id), func.coalesce(func.sum(LeadReveal.credits_used), 0))
        ).first()

        credit_totals = session.execute(
            select(
                func.coalesce(func.sum(BusinessSubscription.lead_credits), 0),
                func.sum(case((BusinessSubscription.lead_credits > 0, 1), else_=0)),
            )
        ).first()

        campaign_state_rows = session.execute(
            select(ClaimCampaign.state, func.count(ClaimCampaign.id)).group_by(ClaimCampaign.state)
        ).all()
        open_campaigns = int(session.execute(
            select(func.count(ClaimCampaign.id)).where(ClaimCampaign.closed_at.is_(None))
        ).scalar() or 0)

        contact_totals = session.execute(
            select(
                func.count(ClaimContact.id),
                func.count(func.distinct(ClaimContact.campaign_id)),
            )
        ).first()

        recent_jobs = session.execute(
            select(JobRun.job_name, JobRun.status, JobRun.started_at, JobRun.finished_at, JobRun.processed_count)
            .order_by(JobRun.started_at.desc())
            .limit(10)
        ).all()

    return {
        "businesses": {
            "total": int(business_totals[0] or 0),
            "claimed": int(business_totals[1] or 0),
            "verified": int(business_totals[2] or 0),
            "lead_eligible": int(business_totals[3] or 0),
            "featured": int(business_totals[4] or 0),
        },
        "quotes": {status: count for status, count in quote_status_rows},
        "quotes_without_coverage": unrouted_quotes,
        "assignments": {status: count for status, count in assignment_status_rows},
        "reveals": {
            "total": int(reveal_totals[0] or 0),
            "credits_spent": int(reveal_totals[1] or 0),
        },
        "credits": {
            "outstanding": int(credit_totals[0] or 0),
            "businesses_with_credits": int(credit_totals[1] or 0),
        },
        "claim_campaigns": {
            "open": open_campaigns,
            "by_state": {state: count for state, count in campaign_state_rows},
        },
        "claim_contacts": {
            "total": int(contact_totals[0] or 0),
            "campaigns": int(contact_totals[1] or 0),
        },
        "recent_jobs": [
            {
                "job_name": job_name,
                "status": status,
                "started_at": started_at.isoformat() if started_at else None,
                "finished_at": finished_at.isoformat() if finished_at else None,
                "processed_count": processed_count,
            }
            for job_name, status, started_at, finished_at, processed_count in recent_jobs
        ],
    }
