"""
Webhook dispatcher.

Authenticates provider-pushed events, deduplicates deliveries and hands the
provider's interpretation of the event to the payment orchestrator. Nothing
reaches a provider's event handler before its authenticity check passes.
"""

import json
from collections.abc import Mapping
from typing import Any

import structlog
from sqlalchemy.orm import sessionmaker

from card_gateway.domain.exceptions import (
    ProviderNotConfigured,
    Unauthorized,
    ValidationError,
)
from card_gateway.domain.timeutils import utcnow
from card_gateway.infrastructure.database import session_scope
from card_gateway.infrastructure.repository import WebhookEventRepository
from card_gateway.providers.base import WebhookDelivery
from card_gateway.providers.registry import ProviderRegistry, parse_provider_name
from card_gateway.services.payments import PaymentOrchestrator
from card_gateway.services.recovery import best_effort

logger = structlog.get_logger(__name__)


class WebhookDispatcher:
    def __init__(
        self,
        registry: ProviderRegistry,
        payments: PaymentOrchestrator,
        session_factory: sessionmaker,
    ) -> None:
        self.registry = registry
        self.payments = payments
        self.session_factory = session_factory

    async def process_webhook(
        self,
        provider_name: str,
        payload: bytes | Mapping[str, Any],
        signature: str | None = None,
        headers: Mapping[str, str] | None = None,
        client_ip: str | None = None,
    ) -> dict[str, Any]:
        """
        Verify and dispatch one webhook delivery.

        Args:
            provider_name: Provider from the URL
            payload: Raw request body (preferred; signatures cover raw bytes)
            signature: Value of the provider's signature header (read from
                ``headers`` when omitted)
            headers: All request headers
            client_ip: Sender address, for allowlist checks

        Returns:
            Acknowledgment: received, provider, timestamp (+ duplicate)

        Raises:
            ValidationError: Unknown provider, missing signature or malformed payload
            ProviderNotConfigured: Provider known but not configured
            Unauthorized: Signature or sender check failed
        """
        name = parse_provider_name(provider_name)
        if name is None:
            raise ValidationError(
                f"Unknown provider: {provider_name}",
                details={"provider": provider_name},
            )
        if not self.registry.is_available(name):
            raise ProviderNotConfigured(
                f"Provider {name.value} is not configured",
                details={"provider": name.value},
            )

        provider = self.registry.resolve(name)
        headers = {key.lower(): value for key, value in (headers or {}).items()}
        if signature is None and provider.signature_header:
            signature = headers.get(provider.signature_header)

        raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        delivery = WebhookDelivery(
            payload=raw,
            signature=signature,
            headers=headers,
            client_ip=client_ip,
        )

        log = logger.bind(provider=name.value)

        if provider.supports_signed_webhooks and not signature:
            log.warning("webhook_signature_missing")
            raise ValidationError("Webhook signature is required", details={"provider": name.value})

        if not provider.verify_webhook(delivery):
            log.warning("webhook_verification_failed", client_ip=client_ip)
            raise Unauthorized("Invalid webhook signature", details={"provider": name.value})

        try:
            event = json.loads(raw)
        except ValueError as e:
            raise ValidationError("Webhook payload is not valid JSON") from e
        if not isinstance(event, dict):
            raise ValidationError("Webhook payload must be a JSON object")

        event_id = provider.extract_event_id(event)
        event_type = event.get("type")
        log = log.bind(event_id=event_id, event_type=event_type)

        acknowledgment = {
            "received": True,
            "provider": name.value,
            "timestamp": utcnow().isoformat(),
        }

        if event_id and not self._record_event(name.value, event_id, event_type):
            log.info("webhook_duplicate_ignored")
            return {**acknowledgment, "duplicate": True}

        try:
            update = await provider.handle_webhook(event)
            if update is not None:
                await self.payments.apply_provider_update(name.value, update)
        except Exception:
            if event_id:
                # Let the provider's redelivery be processed
                best_effort(
                    "webhook_event_release_failed",
                    lambda: self._forget_event(name.value, event_id),
                    provider=name.value,
                    event_id=event_id,
                )
            raise

        log.info("webhook_processed", status_update=update.status.value if update else None)
        return acknowledgment

    def _record_event(self, provider: str, event_id: str, event_type: str | None) -> bool:
        with session_scope(self.session_factory) as db:
            return WebhookEventRepository(db).record(provider, event_id, event_type)

    def _forget_event(self, provider: str, event_id: str) -> None:
        with session_scope(self.session_factory) as db:
            WebhookEventRepository(db).forget(provider, event_id)
