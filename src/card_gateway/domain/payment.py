"""Payment entity, charge outcomes and amount helpers."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from card_gateway.domain.timeutils import utcnow


class PaymentStatus(str, Enum):
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PROCESSING: frozenset({PaymentStatus.COMPLETED, PaymentStatus.FAILED}),
    PaymentStatus.COMPLETED: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}

# How long one refund attempt keeps other refunds of the payment out
REFUND_CLAIM_TTL = timedelta(minutes=2)

# ISO 4217 currencies without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)


def can_transition(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS[current]


def is_zero_decimal(currency: str) -> bool:
    return currency.upper() in ZERO_DECIMAL_CURRENCIES


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Convert a major-unit amount to the provider's integer representation.

    Examples:
        to_minor_units(Decimal("10.50"), "USD") -> 1050
        to_minor_units(Decimal("15000"), "CLP") -> 15000
    """
    if is_zero_decimal(currency):
        return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int, currency: str) -> Decimal:
    if is_zero_decimal(currency):
        return Decimal(value)
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


def generate_payment_id() -> str:
    # Transbank caps buy orders at 26 characters
    return f"pay_{uuid.uuid4().hex[:20]}"


@dataclass(frozen=True)
class Payment:
    payment_id: str
    user_id: str
    professional_id: str
    service_request_id: str
    amount: Decimal
    currency: str
    provider: str
    description: str
    status: PaymentStatus = PaymentStatus.PROCESSING
    card_id: str | None = None
    transaction_id: str | None = None
    provider_payment_id: str | None = None
    error_message: str | None = None
    refund_metadata: dict[str, Any] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    refunded_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if self.status == PaymentStatus.FAILED and not self.error_message:
            raise ValueError("failed payments must carry an error_message")

    def is_party(self, user_id: str) -> bool:
        """Payer or counterparty."""
        return user_id in (self.user_id, self.professional_id)

    def to_view(self) -> dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "status": self.status.value,
            "amount": str(self.amount),
            "currency": self.currency,
            "provider": self.provider,
            "description": self.description,
            "provider_payment_id": self.provider_payment_id,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
            "refunded_at": self.refunded_at.isoformat() if self.refunded_at else None,
        }


@dataclass(frozen=True)
class ChargeResult:
    """
    Provider outcome of a charge.

    Declines are outcomes, not exceptions: ``status`` is FAILED and
    ``error_message`` explains why. PROCESSING means the provider settles
    asynchronously and a webhook finalizes the payment.
    """

    status: PaymentStatus
    transaction_id: str | None = None
    provider_payment_id: str | None = None
    authorization_code: str | None = None
    error_message: str | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.status == PaymentStatus.REFUNDED:
            raise ValueError("a charge cannot result in a refund")
        if self.status == PaymentStatus.FAILED and not self.error_message:
            raise ValueError("failed charges must carry an error_message")
        if self.status == PaymentStatus.COMPLETED and not self.transaction_id:
            raise ValueError("completed charges must carry a transaction_id")


@dataclass(frozen=True)
class RefundResult:
    refund_id: str | None
    status: str
    amount: Decimal | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusUpdate:
    """Provider-reported status of a transaction (status check or webhook)."""

    transaction_id: str
    status: PaymentStatus
    error_message: str | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)
