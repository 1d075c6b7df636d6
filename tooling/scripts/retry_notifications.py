#!/usr/bin/env python3
"""Re-deliver failed webhook notifications.

Example:
    python tooling/scripts/retry_notifications.py --limit 20 --target-type broker
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Retry failed notifications")
    parser.add_argument("--limit", type=int, default=50, help="Maximum notifications retried in this pass.")
    parser.add_argument(
        "--target-type",
        choices=("broker", "merchant"),
        default=None,
        help="Only retry notifications for this target type.",
    )
    return parser.parse_args()


async def _run(limit: int, target_type: str | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    import httpx

    from pointsweep_api.api.dependencies.services import get_notification_delivery  # type: ignore import-position
    from pointsweep_api.db.session import async_session  # type: ignore import-position
    from pointsweep_api.models.notification import (  # type: ignore import-position
        NotificationStatusEnum,
        NotificationTargetTypeEnum,
    )

    async with httpx.AsyncClient() as http_client:
        delivery = get_notification_delivery(async_session, http_client)
        failed = await delivery.list(
            status=NotificationStatusEnum.FAILED,
            target_type=NotificationTargetTypeEnum(target_type) if target_type else None,
            limit=limit,
        )
        summary = {"attempted": 0, "sent": 0, "failed": 0}
        for notification in failed:
            result = await delivery.retry(notification.id)
            summary["attempted"] += 1
            summary["sent" if result.success else "failed"] += 1
        return summary


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.limit, args.target_type))
    logger.success("Notification retry pass completed", **summary)
    return 0


if __name__ == "__main__":
    sys.exit(main())
