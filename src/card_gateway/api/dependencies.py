"""FastAPI dependencies for caller identity and service injection.

The orchestrators are built once in the application lifespan and stored on
``app.state``; routes receive them through the ``Annotated`` aliases below.
"""

from dataclasses import dataclass
from typing import Annotated, Any

import structlog
from fastapi import Depends, Header, Request

from card_gateway.domain.exceptions import Forbidden, Unauthorized
from card_gateway.logging_config import bind_request_context
from card_gateway.providers.registry import ProviderRegistry
from card_gateway.services.payments import PaymentOrchestrator
from card_gateway.services.tokenization import TokenizationOrchestrator
from card_gateway.services.webhooks import WebhookDispatcher

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CallerIdentity:
    """Authenticated caller plus the trust metadata recorded with its writes."""

    user_id: str
    user_agent: str | None = None
    client_ip: str | None = None
    request_id: str | None = None

    def trust_metadata(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in (
                ("user_agent", self.user_agent),
                ("client_ip", self.client_ip),
                ("request_id", self.request_id),
            )
            if value
        }

    def require_self(self, user_id: str | None) -> str:
        """Return the effective user id; a body user_id must match the caller."""
        if user_id and user_id != self.user_id:
            logger.warning("caller_user_mismatch", caller=self.user_id, requested=user_id)
            raise Forbidden("user_id does not match the authenticated caller")
        return self.user_id


def client_ip_of(request: Request) -> str | None:
    """
    Address of the connected peer.

    Forwarding headers are never read here; behind a proxy the
    ProxyHeadersMiddleware rewrites the peer for trusted proxies only.
    """
    return request.client.host if request.client else None


async def get_identity(
    request: Request,
    x_user_id: Annotated[str | None, Header()] = None,
    user_agent: Annotated[str | None, Header()] = None,
    x_request_id: Annotated[str | None, Header()] = None,
) -> CallerIdentity:
    """
    Read the caller set by the upstream authenticating gateway.

    Raises:
        Unauthorized: X-User-Id header missing or blank
    """
    if not x_user_id or not x_user_id.strip():
        raise Unauthorized("Missing X-User-Id header")
    user_id = x_user_id.strip()
    bind_request_context(request_id=x_request_id, user_id=user_id)
    return CallerIdentity(
        user_id=user_id,
        user_agent=user_agent,
        client_ip=client_ip_of(request),
        request_id=x_request_id,
    )


def get_tokenization(request: Request) -> TokenizationOrchestrator:
    return request.app.state.tokenization


def get_payments(request: Request) -> PaymentOrchestrator:
    return request.app.state.payments


def get_webhooks(request: Request) -> WebhookDispatcher:
    return request.app.state.webhooks


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


# Type aliases for dependencies
Identity = Annotated[CallerIdentity, Depends(get_identity)]
Tokenization = Annotated[TokenizationOrchestrator, Depends(get_tokenization)]
Payments = Annotated[PaymentOrchestrator, Depends(get_payments)]
Webhooks = Annotated[WebhookDispatcher, Depends(get_webhooks)]
Registry = Annotated[ProviderRegistry, Depends(get_registry)]
