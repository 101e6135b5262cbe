"""API route modules."""

from card_gateway.api.routes import payments, tokenization, utilities, webhooks

__all__ = ["payments", "tokenization", "utilities", "webhooks"]
