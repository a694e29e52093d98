"""Check recent job runs."""
from __future__ import annotations

import argparse

from sqlalchemy import desc, select

from lead_engine.db import session_scope
from lead_engine.models import JobRun


def main() -> None:
    parser = argparse.ArgumentParser(description="Show recent batch job runs")
    parser.add_argument("--limit", type=int, default=15)
    parser.add_argument("--job", default=None, help="Only show runs of this job name")
    parser.add_argument("--failed", action="store_true", help="Only show failed runs")
    args = parser.parse_args()

    with session_scope() as session:
        stmt = select(JobRun).order_by(desc(JobRun.started_at)).limit(args.limit)
        if args.job:
            stmt = stmt.where(JobRun.job_name == args.job)
        if args.failed:
            stmt = stmt.where(JobRun.status == "failed")
        runs = session.execute(stmt).scalars().all()

        print(f"{'Job Name':<30} {'Status':<10} {'Started At':<34} {'Processed':<10}")
        print("-" * 86)
        for run in runs:
            print(f"{run.job_name:<30} {run.status:<10} {str(run.started_at):<34} {run.processed_count or 0:<10}")
            if run.error:
                print(f"    error: {run.error[:200]}")


if __name__ == "__main__":
    main()
