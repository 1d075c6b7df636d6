#!/usr/bin/env python3
"""Settle a merchant's unpaid confirmed and executed orders.

Example:
    python tooling/scripts/mark_paid.py --merchant M1
    python tooling/scripts/mark_paid.py --merchant M1 --transfer

A rerun for the same merchant affects no orders.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Mark merchant orders as paid")
    parser.add_argument("--merchant", required=True, help="Merchant id to settle.")
    parser.add_argument("--paid-batch-id", default=None, help="Override the generated paid batch id.")
    parser.add_argument(
        "--transfer",
        action="store_true",
        help="Submit the bank transfer for the paid batch afterwards.",
    )
    return parser.parse_args()


async def _run(merchant: str, paid_batch_id: str | None, transfer: bool) -> dict[str, object]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    import httpx

    from pointsweep_api.api.dependencies.services import (  # type: ignore import-position
        get_bank_transfer_service,
        get_notification_delivery,
        get_payment_settlement,
    )
    from pointsweep_api.db.session import async_session  # type: ignore import-position

    async with httpx.AsyncClient() as http_client:
        settlement = get_payment_settlement(async_session, get_notification_delivery(async_session, http_client))
        result = await settlement.mark_paid(merchant, paid_batch_id)
        summary = result.as_dict()
        if transfer and result.affected:
            bank = get_bank_transfer_service(async_session, http_client)
            record = await bank.initiate_transfer(result.paid_batch_id)
            summary["transfer"] = {"status": record.status.value, "external_id": record.external_id}
        return summary


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.merchant, args.paid_batch_id, args.transfer))
    print(json.dumps(summary, indent=2, default=str))
    logger.success(
        "Merchant settlement completed",
        merchant_id=args.merchant,
        paid_batch_id=summary.get("paid_batch_id"),
        affected=summary.get("affected"),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
