"""Human-readable identifiers for batches, runs and payments."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4


def timestamped_id(prefix: str, now: datetime | None = None) -> str:
    """``PREFIX-YYYYMMDD-HHMMSS-xxxxxx`` with a random six character suffix."""

    moment = now or datetime.now(timezone.utc)
    return f"{prefix}-{moment:%Y%m%d-%H%M%S}-{uuid4().hex[:6]}"


def paid_batch_id(merchant_id: str, now: datetime | None = None) -> str:
    moment = now or datetime.now(timezone.utc)
    return f"ACH_{merchant_id}_{moment:%Y%m%d_%H%M%S}"


__all__ = ["paid_batch_id", "timestamped_id"]
