from __future__ import annotations

import argparse
import json

from lead_engine.metrics import collect_metrics


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Print engine metrics as JSON")
    parser.add_argument(
        "--section",
        action="append",
        help="Only print this top-level section (repeatable), e.g. claim_campaigns",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    metrics = collect_metrics()
    if args.section:
        unknown = [name for name in args.section if name not in metrics]
        if unknown:
            raise SystemExit(f"Unknown section(s): {', '.join(unknown)}; choose from {', '.join(metrics)}")
        metrics = {name: metrics[name] for name in args.section}
    print(json.dumps(metrics, indent=2, default=str))


if __name__ == "__main__":
    main()
