#!/usr/bin/env python3
"""Print the lineage of a basket, order, batch or reference.

Example:
    python tooling/scripts/trace_lineage.py order 42
    python tooling/scripts/trace_lineage.py ach-batch ACH_M1_20261017_150000
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Trace an identifier through the settlement pipeline")
    parser.add_argument(
        "type",
        help="basket, order, prepare-batch, sweep-batch, broker-reference, exec-reference or ach-batch",
    )
    parser.add_argument("id", help="Identifier to trace from.")
    return parser.parse_args()


async def _run(lineage_type: str, identifier: str) -> dict[str, object]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from pointsweep_api.db.session import async_session  # type: ignore import-position
    from pointsweep_api.services.lineage.tracer import LineageTracer  # type: ignore import-position

    lineage = await LineageTracer(async_session).trace(identifier, lineage_type)
    return lineage.as_dict()


def main() -> int:
    args = parse_args()
    print(json.dumps(asyncio.run(_run(args.type, args.id)), indent=2, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
