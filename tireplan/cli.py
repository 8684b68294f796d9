"""Run one daily billing pass and exit (for external cron deployments)."""
from __future__ import annotations

import argparse
import asyncio
import logging
from datetime import datetime
from typing import Optional

from tireplan.bootstrap import build_components
from tireplan.config import Settings, get_settings


async def run_daily_billing(as_of: Optional[datetime] = None, settings: Optional[Settings] = None) -> int:
    """Bill everything due on the local day containing ``as_of`` (naive UTC)."""
    billing = build_components(settings or get_settings())
    try:
        return await billing.scheduler.run_once(as_of)
    finally:
        await billing.aclose()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Run the TirePlan daily billing pass once.")
    parser.add_argument(
        "--as-of",
        type=datetime.fromisoformat,
        default=None,
        help="Naive UTC timestamp to bill as of (default: now)",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    processed = asyncio.run(run_daily_billing(args.as_of))
    print(f"Daily billing pass complete: {processed} subscriptions processed.")


if __name__ == "__main__":
    main()
