"""Inbound broker callbacks."""

import json
from typing import Any

from fastapi import APIRouter, Depends, Header, Request

from pointsweep_api.api.dependencies.services import get_callback_handler
from pointsweep_api.core.errors import ValidationError
from pointsweep_api.services.callbacks.broker_events import BrokerCallbackHandler
from pointsweep_api.services.notifications.signing import SIGNATURE_HEADER


router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def _bearer(authorization: str | None) -> str | None:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization[7:].strip() or None
    return None


@router.post("/broker", summary="Broker acknowledgement, confirmation and execution callbacks")
async def broker_webhook(
    request: Request,
    x_api_key: str | None = Header(None, alias="X-API-Key"),
    authorization: str | None = Header(None),
    signature: str | None = Header(None, alias=SIGNATURE_HEADER),
    event_type: str | None = Header(None, alias="X-Event-Type"),
    request_id: str | None = Header(None, alias="X-Request-Id"),
    handler: BrokerCallbackHandler = Depends(get_callback_handler),
) -> dict[str, Any]:
    raw_body = await request.body()
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError as exc:
        raise ValidationError("Request body must be JSON") from exc
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    result = await handler.handle(
        event_type or payload.get("event_type") or payload.get("event"),
        payload,
        api_key=x_api_key or _bearer(authorization),
        raw_body=raw_body,
        signature=signature,
        request_id=request_id,
    )
    return {"success": True, **result.as_dict()}
