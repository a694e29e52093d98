from __future__ import annotations

import argparse
import json
import logging

from lead_engine.dedupe import IdentityKey
from lead_engine.workers.merge_duplicates import run


def main() -> None:
    parser = argparse.ArgumentParser(description="Find and merge duplicate business listings")
    parser.add_argument(
        "--key",
        choices=[key.value for key in IdentityKey],
        default=IdentityKey.NAME_LOCATION.value,
        help="Identity used to group duplicates",
    )
    parser.add_argument("--execute", action="store_true", help="Apply the merge (default is a dry run)")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    result = run(IdentityKey(args.key), execute=args.execute)
    if result["dry_run"]:
        print(json.dumps(result["items"], indent=2, default=str))
        print(f"{result['groups']} duplicate groups, {result['would_delete']} listings would be deleted")
        print("Re-run with --execute to merge.")
        return

    print(f"Merged {result['groups']} groups, deleted {result['deleted']} listings")
    for relation, count in result["repointed"].items():
        print(f"  {relation}: {count} rows re-pointed")
    for error in result["errors"]:
        print(f"  failed: {error}")


if __name__ == "__main__":
    main()
