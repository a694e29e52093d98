from __future__ import annotations

import uuid
from datetime import datetime
from typing import Iterable, Optional

from ..claims import backfill_auto_campaigns, expire_campaigns, issue_bulk
from ..config import load_config
from ..db import session_scope
from ..jobs import complete_job, fail_job, start_job
from ..outreach import claim_url

ISSUE_JOB_NAME = "issue_claim_tokens"
BACKFILL_JOB_NAME = "backfill_auto_campaigns"
EXPIRE_JOB_NAME = "expire_claim_campaigns"


def issue_tokens(
    business_ids: Iterable[uuid.UUID],
    campaign_name: Optional[str] = None,
    expires_in_days: Optional[int] = None,
) -> dict:
    business_ids = list(business_ids)
    with session_scope() as session:
        run = start_job(session, ISSUE_JOB_NAME, scope=campaign_name, details={"requested": len(business_ids)})
        try:
            result = issue_bulk(session, business_ids, campaign_name=campaign_name, expires_in_days=expires_in_days)
            campaigns = [
                {
                    "business_id": str(campaign.business_id),
                    "campaign_id": str(campaign.id),
                    "claim_token": campaign.claim_token,
                    "claim_url": claim_url(campaign.claim_token),
                    "expires_at": campaign.expires_at.isoformat(),
                }
                for campaign in result["campaigns"]
            ]
            complete_job(
                session,
                run,
                processed_count=result["summary"]["total"],
                details={**result["summary"], "errors": result["errors"][:50]},
            )
            return {
                "campaigns": campaigns,
                "skipped": result["skipped"],
                "errors": result["errors"],
                "summary": result["summary"],
            }
        except Exception as exc:
            fail_job(ISSUE_JOB_NAME, error=str(exc), scope=campaign_name)
            raise


def backfill(limit: Optional[int] = None) -> dict:
    config = load_config()
    max_items = config.batch_size if limit is None else max(limit, 0)

    with session_scope() as session:
        run = start_job(session, BACKFILL_JOB_NAME, details={"limit": max_items})
        try:
            result = backfill_auto_campaigns(session, limit=max_items)
            complete_job(
                session,
                run,
                processed_count=result["processed"],
                details={"issued": result["issued"], "errors": result["errors"][:50]},
            )
            return result
        except Exception as exc:
            fail_job(BACKFILL_JOB_NAME, error=str(exc))
            raise


def expire(now: Optional[datetime] = None) -> dict:
    with session_scope() as session:
        run = start_job(session, EXPIRE_JOB_NAME)
        try:
            result = expire_campaigns(session, now=now)
            complete_job(
                session,
                run,
                processed_count=result["expired"] + result["closed_on_claimed"],
                details=result,
            )
            return result
        except Exception as exc:
            fail_job(EXPIRE_JOB_NAME, error=str(exc))
            raise
