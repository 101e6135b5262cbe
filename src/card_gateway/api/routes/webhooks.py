"""Provider webhook endpoint."""

from typing import Any

import structlog
from fastapi import APIRouter, Request

from card_gateway.api.dependencies import Webhooks, client_ip_of
from card_gateway.api.models import envelope
from card_gateway.domain.exceptions import ValidationError
from card_gateway.logging_config import bind_request_context

logger = structlog.get_logger()

router = APIRouter(tags=["webhooks"])


@router.post("/webhook/{provider}")
async def receive_webhook(provider: str, request: Request, webhooks: Webhooks) -> dict[str, Any]:
    """
    Receive a provider event.

    The raw body is passed through untouched since signatures are computed
    over the exact bytes the provider sent.
    """
    bind_request_context(request_id=request.headers.get("x-request-id"), webhook_provider=provider)
    max_bytes = request.app.state.settings.webhook_max_payload_bytes
    payload = await request.body()
    if len(payload) > max_bytes:
        logger.warning("webhook_payload_too_large", provider=provider, size=len(payload))
        raise ValidationError(
            "Webhook payload too large",
            details={"size": len(payload), "limit": max_bytes},
        )

    ack = await webhooks.process_webhook(
        provider,
        payload,
        headers=dict(request.headers),
        client_ip=client_ip_of(request),
    )
    return envelope(ack)
