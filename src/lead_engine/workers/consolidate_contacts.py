from __future__ import annotations

from typing import Optional

from ..config import load_config
from ..contacts import consolidate_campaign_contacts
from ..db import session_scope
from ..jobs import complete_job, fail_job, start_job

JOB_NAME = "consolidate_claim_contacts"


def run_batch(limit: Optional[int] = None) -> dict:
    config = load_config()
    max_items = config.batch_size if limit is None else max(limit, 0)

    with session_scope() as session:
        run = start_job(session, JOB_NAME, details={"limit": max_items})
        try:
            result = consolidate_campaign_contacts(session, limit=max_items)
            complete_job(
                session,
                run,
                processed_count=result["processed"],
                details={
                    "contacts_inserted": result["contacts_inserted"],
                    "multi_email_campaigns": result["multi_email_campaigns"],
                    "errors": result["errors"][:50],
                },
            )
            return result
        except Exception as exc:
            fail_job(JOB_NAME, error=str(exc))
            raise
