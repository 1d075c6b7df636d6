"""HMAC-SHA256 webhook signatures over exact body bytes."""

from __future__ import annotations

import hashlib
import hmac
import json
from typing import Any

SIGNATURE_HEADER = "X-Signature"
SIGNATURE_PREFIX = "sha256="


def canonical_json(payload: Any) -> str:
    """Compact, key-sorted serialisation; the stored and signed text are the same string."""

    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def sign(body: bytes | str, secret: str) -> str:
    raw = body.encode("utf-8") if isinstance(body, str) else body
    digest = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def verify(body: bytes | str, secret: str, signature: str | None) -> bool:
    if not signature or not secret:
        return False
    presented = signature.strip()
    if not presented.startswith(SIGNATURE_PREFIX):
        presented = f"{SIGNATURE_PREFIX}{presented}"
    return hmac.compare_digest(sign(body, secret), presented)


__all__ = ["SIGNATURE_HEADER", "canonical_json", "sign", "verify"]
