#!/usr/bin/env python3
"""Run the sweep once for every approved prepare batch.

Intended usage: schedule via cron during market hours; a run outside the
session exits cleanly with ``market_closed`` and writes nothing.

Example:
    python tooling/scripts/run_sweep.py --merchant M1
    python tooling/scripts/run_sweep.py --preview
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Promote and notify approved prepare batches")
    parser.add_argument("--merchant", default=None, help="Restrict the sweep to one merchant id.")
    parser.add_argument(
        "--trigger",
        default="cron",
        help="Label recorded on the sweep run to describe the invocation source.",
    )
    parser.add_argument(
        "--preview",
        action="store_true",
        help="Print what the sweep would do without promoting or notifying.",
    )
    return parser.parse_args()


async def _run(merchant: str | None, trigger: str, preview: bool) -> dict[str, object]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    import httpx

    from pointsweep_api.api.dependencies.services import (  # type: ignore import-position
        get_market_calendar,
        get_notification_delivery,
        get_sweep_orchestrator,
    )
    from pointsweep_api.db.session import async_session  # type: ignore import-position

    async with httpx.AsyncClient() as http_client:
        delivery = get_notification_delivery(async_session, http_client)
        orchestrator = get_sweep_orchestrator(async_session, delivery, get_market_calendar())
        if preview:
            return await orchestrator.preview(merchant)
        result = await orchestrator.run(merchant, triggered_by=trigger)
        return result.as_dict()


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.merchant, args.trigger, args.preview))
    print(json.dumps(summary, indent=2, default=str))
    if args.preview:
        logger.info("Sweep preview completed", would_run=summary.get("would_run"))
        return 0
    logger.success(
        "Sweep run completed",
        status=summary.get("status"),
        orders_processed=summary.get("orders_processed"),
        orders_failed=summary.get("orders_failed"),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
