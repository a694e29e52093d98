from __future__ import annotations

from dataclasses import asdict

from ..db import session_scope
from ..dedupe import IdentityKey, apply, preview
from ..jobs import complete_job, fail_job, start_job
from ..notifications import notify_merge_summary

JOB_NAME = "merge_duplicate_businesses"


def run(key: IdentityKey = IdentityKey.NAME_LOCATION, execute: bool = False) -> dict:
    """Preview duplicate groups, or merge them when ``execute`` is set."""
    key = IdentityKey(key)
    if not execute:
        with session_scope() as session:
            groups = preview(session, key)
        return {
            "identity_key": key.value,
            "dry_run": True,
            "groups": len(groups),
            "would_delete": sum(len(group["duplicates"]) for group in groups),
            "items": groups,
        }

    with session_scope() as session:
        run_row = start_job(session, JOB_NAME, scope=key.value)
        try:
            summary = apply(session, key)
            complete_job(
                session,
                run_row,
                processed_count=summary.groups,
                details={
                    "deleted": summary.deleted,
                    "repointed": summary.repointed,
                    "errors": summary.errors[:50],
                },
            )
        except Exception as exc:
            fail_job(JOB_NAME, error=str(exc), scope=key.value)
            raise

    if summary.groups:
        notify_merge_summary(key.value, summary.groups, summary.deleted)
    return {"dry_run": False, **asdict(summary)}
