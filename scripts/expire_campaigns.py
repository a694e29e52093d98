from __future__ import annotations

import argparse
import logging

from lead_engine.workers.claim_tokens import expire


def main() -> None:
    argparse.ArgumentParser(description="Close claim campaigns that ran past their expiry").parse_args()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    result = expire()
    print(
        "Expired {expired} campaigns, closed {closed_on_claimed} left open on claimed businesses".format(**result)
    )


if __name__ == "__main__":
    main()
