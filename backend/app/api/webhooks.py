"""Provider webhook routes."""

import json
import logging
from typing import Any

from fastapi import APIRouter, Request

from app.errors import ValidationFailed
from app.services.reconciler import get_reconciler
from app.services.webhook_verifier import get_webhook_verifier

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/openai")
async def openai_webhook(request: Request) -> dict[str, Any]:
    """Receive a signed response lifecycle event.

    The signature is checked against the raw body before it is parsed.
    """
    body = await request.body()
    await get_webhook_verifier().verify(request.headers, body)

    try:
        event = json.loads(body)
    except ValueError as e:
        logger.warning(f"Webhook body is not valid JSON: {e}")
        raise ValidationFailed("Invalid JSON payload") from e
    if not isinstance(event, dict):
        raise ValidationFailed("Invalid JSON payload")

    return await get_reconciler().handle_webhook_event(event)
