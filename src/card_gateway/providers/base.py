"""Base interface for payment providers."""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar

from card_gateway.domain.card import PaymentCard, TokenizedCard
from card_gateway.domain.exceptions import MethodNotSupported
from card_gateway.domain.payment import ChargeResult, Payment, RefundResult, StatusUpdate
from card_gateway.domain.session import TokenizationSession


class ProviderName(str, Enum):
    STRIPE = "stripe"
    TRANSBANK = "transbank"
    MERCADOPAGO = "mercadopago"


class ProviderShape(str, Enum):
    """How a provider turns card data into a reusable token."""

    DIRECT = "direct"  # raw card data in, token out
    REDIRECT = "redirect"  # hosted enrollment page, completed by callback
    VAULT = "vault"  # client SDK already issued an opaque token


PRODUCTION_ENVIRONMENTS = frozenset({"production", "live"})


@dataclass(frozen=True)
class ProviderConfig:
    """
    Immutable per-provider configuration, loaded once at startup.

    Attributes:
        provider: Provider name
        shape: Tokenization shape of the provider
        credentials: Provider secrets (never logged)
        environment: sandbox/integration or production
        enabled: Whether the provider may be resolved
        timeout_seconds: Upper bound for every provider call
        options: Non-secret provider options
    """

    provider: ProviderName
    shape: ProviderShape
    credentials: Mapping[str, str] = field(default_factory=dict, repr=False)
    environment: str = "sandbox"
    enabled: bool = True
    timeout_seconds: float = 10.0
    options: Mapping[str, Any] = field(default_factory=dict)

    @property
    def method(self) -> str:
        """Client-facing tokenization method: redirect or direct."""
        return "redirect" if self.shape == ProviderShape.REDIRECT else "direct"

    @property
    def test_mode(self) -> bool:
        return self.environment.lower() not in PRODUCTION_ENVIRONMENTS

    def to_summary(self) -> dict[str, Any]:
        return {
            "provider": self.provider.value,
            "method": self.method,
            "enabled": self.enabled,
            "is_test_mode": self.test_mode,
        }


@dataclass(frozen=True)
class CallbackTemplate:
    """Tells the client how the provider will deliver the completion callback."""

    method: str
    include_in: str
    parameter_name: str

    def to_dict(self) -> dict[str, str]:
        return {
            "method": self.method,
            "include_in": self.include_in,
            "parameter_name": self.parameter_name,
        }


@dataclass(frozen=True)
class DirectTokenizationInput:
    """
    Card data for a one-call tokenization.

    Holds PAN/CVV only for the duration of the provider call; never persisted
    and never logged (``__repr__`` hides them).
    """

    user_id: str
    card_number: str | None = field(default=None, repr=False)
    card_exp_month: int | None = None
    card_exp_year: int | None = None
    card_cvv: str | None = field(default=None, repr=False)
    card_holder_name: str | None = None
    card_token: str | None = field(default=None, repr=False)
    email: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionInput:
    user_id: str
    return_url: str
    email: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SessionHandle:
    """Provider answer to a session creation."""

    provider_token: str
    redirect_url: str
    customer_reference: str | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class WebhookDelivery:
    """One inbound webhook request as received over HTTP."""

    payload: bytes
    signature: str | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    client_ip: str | None = None


class PaymentProvider(ABC):
    """
    Abstract base class for payment provider integrations.

    All providers (Stripe, Transbank, MercadoPago) implement this interface so
    that orchestrators dispatch by name without knowing the provider's shape
    details. Operations that do not apply to a shape raise
    ``MethodNotSupported``.

    Card declines are NOT exceptions: ``charge`` returns a ``ChargeResult``
    with status FAILED. Provider failures raise ``ProviderError`` and timeouts
    raise ``ProviderTimeout``.
    """

    name: ClassVar[ProviderName]
    shape: ClassVar[ProviderShape]
    session_prefix: ClassVar[str] = ""
    signature_header: ClassVar[str | None] = None

    @property
    def supports_signed_webhooks(self) -> bool:
        return False

    @property
    def callback_template(self) -> CallbackTemplate | None:
        return None

    async def tokenize_direct(self, request: DirectTokenizationInput) -> TokenizedCard:
        raise MethodNotSupported(
            f"{self.name.value} does not support direct tokenization",
            details={"provider": self.name.value, "shape": self.shape.value},
        )

    async def create_session(self, request: SessionInput) -> SessionHandle:
        raise MethodNotSupported(
            f"{self.name.value} does not support session-based tokenization",
            details={"provider": self.name.value, "shape": self.shape.value},
        )

    async def complete_session(
        self, session: TokenizationSession, callback_data: Mapping[str, Any]
    ) -> TokenizedCard:
        raise MethodNotSupported(
            f"{self.name.value} does not support session-based tokenization",
            details={"provider": self.name.value, "shape": self.shape.value},
        )

    def resolve_session_id(self, callback_data: Mapping[str, Any]) -> str | None:
        """Map provider callback parameters to a session id."""
        value = callback_data.get("session_id")
        return str(value) if value else None

    @abstractmethod
    async def charge(
        self, card: PaymentCard, payment: Payment, security_token: str | None = None
    ) -> ChargeResult:
        """
        Charge a stored card.

        Args:
            card: Stored card whose payment_token the provider understands
            payment: Payment record (amount, currency, ids used as idempotency keys)
            security_token: Fresh per-charge token for providers requiring CVV

        Returns:
            ChargeResult with COMPLETED, FAILED (decline) or PROCESSING status

        Raises:
            ProviderError: Provider rejected the request or is unavailable
            ProviderTimeout: No answer within the configured timeout
        """

    @abstractmethod
    async def refund(self, payment: Payment, amount: Decimal | None = None) -> RefundResult:
        """Refund ``amount`` (full amount when None) of a completed payment."""

    @abstractmethod
    async def get_status(self, transaction_id: str) -> StatusUpdate:
        """Ask the provider for the current status of a transaction."""

    @abstractmethod
    def verify_webhook(self, delivery: WebhookDelivery) -> bool:
        """
        Check that a webhook really comes from the provider.

        Providers with ``supports_signed_webhooks`` verify a cryptographic
        signature in constant time; others apply a weaker check.
        """

    async def handle_webhook(self, event: Mapping[str, Any]) -> StatusUpdate | None:
        """Translate a verified event into a payment status update (None to ignore)."""
        return None

    def extract_event_id(self, event: Mapping[str, Any]) -> str | None:
        value = event.get("id")
        return str(value) if value else None

    async def close(self) -> None:
        """Release network resources."""
