from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from .db import session_scope
from .models import JobRun
from .notifications import notify_error

logger = logging.getLogger(__name__)


def start_job(session: Session, job_name: str, scope: Optional[str] = None, details: Optional[dict] = None) -> JobRun:
    run = JobRun(job_name=job_name, scope=scope, status="running", details=details)
    session.add(run)
    session.flush()
    return run


def complete_job(session: Session, run: JobRun, processed_count: int = 0, details: Optional[dict] = None) -> None:
    run.status = "success"
    run.processed_count = processed_count
    run.finished_at = datetime.now(timezone.utc)
    if details is not None:
        run.details = details


def fail_job(job_name: str, error: str, scope: Optional[str] = None, details: Optional[dict] = None) -> None:
    """Record a failed run.

    The failing job's own transaction is being rolled back, so the failure row
    is written in a separate unit of work and an operator alert is pushed.
    """
    logger.error("Job %s failed: %s", job_name, error)
    with session_scope() as session:
        session.add(
            JobRun(
                job_name=job_name,
                scope=scope,
                status="failed",
                error=error[:4000],
                details=details,
                finished_at=datetime.now(timezone.utc),
            )
        )
    notify_error(job_name, error)
