"""Stored card (provider token reference) entity."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, NamedTuple

from card_gateway.domain.timeutils import utcnow


class CardIdentity(NamedTuple):
    """Tuple that identifies one stored card; unique per store."""

    user_id: str
    provider: str
    payment_token: str
    card_last_four: str
    card_brand: str


def generate_card_id() -> str:
    return f"card_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class TokenizedCard:
    """Result of a successful provider tokenization. Never holds PAN or CVV."""

    payment_token: str
    card_last_four: str
    card_brand: str
    card_type: str = "credit"
    expiration_month: int | None = None
    expiration_year: int | None = None
    authorization_code: str | None = None
    token_expires_at: datetime | None = None
    requires_cvv_for_payments: bool = False
    customer_reference: str | None = None
    card_holder_name: str | None = None
    provider_metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.payment_token:
            raise ValueError("payment_token cannot be empty")
        if not self.card_last_four or len(self.card_last_four) != 4:
            raise ValueError("card_last_four must be exactly 4 characters")


@dataclass(frozen=True)
class PaymentCard:
    card_id: str
    user_id: str
    provider: str
    payment_token: str
    card_last_four: str
    card_brand: str
    card_type: str = "credit"
    card_holder_name: str | None = None
    alias: str | None = None
    expiration_month: int | None = None
    expiration_year: int | None = None
    is_default: bool = False
    authorization_code: str | None = None
    token_expires_at: datetime | None = None
    requires_cvv_for_payments: bool = False
    customer_reference: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_tokenized(
        cls,
        tokenized: TokenizedCard,
        user_id: str,
        provider: str,
        *,
        is_default: bool = False,
        alias: str | None = None,
        card_holder_name: str | None = None,
    ) -> "PaymentCard":
        now = utcnow()
        return cls(
            card_id=generate_card_id(),
            user_id=user_id,
            provider=provider,
            payment_token=tokenized.payment_token,
            card_last_four=tokenized.card_last_four,
            card_brand=tokenized.card_brand.lower(),
            card_type=tokenized.card_type,
            card_holder_name=card_holder_name or tokenized.card_holder_name,
            alias=alias,
            expiration_month=tokenized.expiration_month,
            expiration_year=tokenized.expiration_year,
            is_default=is_default,
            authorization_code=tokenized.authorization_code,
            token_expires_at=tokenized.token_expires_at,
            requires_cvv_for_payments=tokenized.requires_cvv_for_payments,
            customer_reference=tokenized.customer_reference,
            created_at=now,
            updated_at=now,
        )

    @property
    def identity(self) -> CardIdentity:
        return CardIdentity(
            user_id=self.user_id,
            provider=self.provider,
            payment_token=self.payment_token,
            card_last_four=self.card_last_four,
            card_brand=self.card_brand,
        )

    def public_view(self) -> dict[str, Any]:
        """Fields safe to return to clients."""
        return {
            "token_id": self.card_id,
            "card_last_four": self.card_last_four,
            "card_brand": self.card_brand,
            "provider": self.provider,
            "is_default": self.is_default,
        }

    def detailed_view(self) -> dict[str, Any]:
        view = self.public_view()
        view.update(
            card_type=self.card_type,
            alias=self.alias,
            expiration_month=self.expiration_month,
            expiration_year=self.expiration_year,
            requires_cvv_for_payments=self.requires_cvv_for_payments,
            created_at=self.created_at.isoformat(),
        )
        return view
