"""Orchestrators coordinating providers and the card/payment store."""

from card_gateway.services.payments import PaymentOrchestrator
from card_gateway.services.tokenization import TokenizationOrchestrator
from card_gateway.services.webhooks import WebhookDispatcher

__all__ = [
    "PaymentOrchestrator",
    "TokenizationOrchestrator",
    "WebhookDispatcher",
]
