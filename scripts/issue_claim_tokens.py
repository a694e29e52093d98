from __future__ import annotations

import argparse
import logging
import sys
import uuid

from lead_engine.workers.claim_tokens import backfill, issue_tokens


def _read_ids(path: str) -> list[uuid.UUID]:
    with open(path, encoding="utf-8") as handle:
        return [uuid.UUID(line.strip()) for line in handle if line.strip()]


def main() -> None:
    parser = argparse.ArgumentParser(description="Issue claim campaigns for unclaimed businesses")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--business-ids", nargs="+", type=uuid.UUID, help="Businesses to issue tokens for")
    group.add_argument("--ids-file", help="File with one business id per line")
    group.add_argument("--backfill", action="store_true", help="Create auto campaigns for businesses without any")
    parser.add_argument("--campaign-name", default=None)
    parser.add_argument("--expires-in-days", type=int, default=None)
    parser.add_argument("--limit", type=int, default=None, help="Backfill batch size")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if args.backfill:
        result = backfill(limit=args.limit)
        print("Processed {processed} businesses, issued {issued} auto campaigns".format(**result))
        for error in result["errors"]:
            print(f"  {error['business_id']}: {error['error']}")
        return

    business_ids = args.business_ids or _read_ids(args.ids_file)
    result = issue_tokens(business_ids, campaign_name=args.campaign_name, expires_in_days=args.expires_in_days)
    summary = result["summary"]
    print(
        "Requested {total}: issued {successful}, skipped {skipped}, failed {failed}".format(**summary)
    )
    for campaign in result["campaigns"]:
        print(f"  {campaign['business_id']} -> {campaign['claim_url']}")
    for error in result["errors"]:
        print(f"  {error['business_id']}: {error['error']}", file=sys.stderr)


if __name__ == "__main__":
    main()
