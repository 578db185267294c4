"""
Webhook routes for the messaging provider.

The provider retries any non-2xx answer, so everything past basic body
validation is reported with a 200 and the outcome in the body.
"""

import hmac
import json
from datetime import UTC, datetime

from fastapi import APIRouter, HTTPException, Request, status

from app.config import settings
from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhook"])


def _check_secret(request: Request) -> None:
    expected = settings.WEBHOOK_SECRET
    if not expected:
        return

    provided = request.headers.get("x-webhook-secret") or request.query_params.get("secret") or ""
    if not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Webhook rejected: invalid secret", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook secret")


async def _read_body(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")

    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Body must be a JSON object")

    event = body.get("event")
    if not isinstance(event, str) or not event.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing 'event' field")
    return body


async def _handle_webhook(request: Request, instance_key: str | None) -> dict:
    _check_secret(request)
    body = await _read_body(request)
    container = request.app.state.container

    outcome = await container.event_router.handle(body["event"], body, instance_key=instance_key)

    await container.audit.log(
        "webhook_received",
        actor="provider",
        resource_type="webhook",
        resource_id=instance_key or outcome.data.get("instanceId"),
        metadata={
            "event": body["event"],
            "success": outcome.success,
            "processed": outcome.processed,
            "error": outcome.error_code,
        },
    )
    return outcome.to_response()


@router.get("/status")
async def webhook_status() -> dict:
    """Liveness probe for the provider's webhook configuration screen."""
    return {
        "status": "online",
        "timestamp": datetime.now(UTC).isoformat(),
        "service": settings.SERVICE_NAME,
    }


@router.post("")
async def receive_webhook(request: Request) -> dict:
    return await _handle_webhook(request, None)


@router.post("/{instance_key}")
async def receive_instance_webhook(instance_key: str, request: Request) -> dict:
    return await _handle_webhook(request, instance_key)
