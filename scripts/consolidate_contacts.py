from __future__ import annotations

import argparse
import logging

from lead_engine.workers.consolidate_contacts import run_batch


def main() -> None:
    parser = argparse.ArgumentParser(description="Split legacy claim recipient lists into claim_contacts rows")
    parser.add_argument("--limit", type=int, default=None, help="Max campaigns to process in this run")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    result = run_batch(limit=args.limit)
    print(
        "Processed {processed} campaigns, inserted {contacts_inserted} contacts, "
        "{multi_email_campaigns} campaigns had several addresses".format(**result)
    )
    for error in result["errors"]:
        print(f"  {error['campaign_id']}: {error['error']}")


if __name__ == "__main__":
    main()
