"""Pytest configuration and shared fixtures for all tests.

This module provides shared test fixtures including:
- In-memory SQLite database with the full schema
- Fake providers for the direct, redirect and vault shapes
- A provider registry wired to the fakes
- Orchestrators built on top of both
"""

from collections.abc import Mapping
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any

import pytest

from card_gateway.domain.card import PaymentCard, TokenizedCard
from card_gateway.domain.payment import (
    ChargeResult,
    Payment,
    PaymentStatus,
    RefundResult,
    StatusUpdate,
)
from card_gateway.domain.session import TokenizationSession
from card_gateway.infrastructure.database import (
    create_db_engine,
    create_session_factory,
    drop_all_tables,
    init_db,
)
from card_gateway.providers.base import (
    CallbackTemplate,
    DirectTokenizationInput,
    PaymentProvider,
    ProviderConfig,
    ProviderName,
    ProviderShape,
    SessionHandle,
    SessionInput,
    WebhookDelivery,
)
from card_gateway.providers.registry import ProviderRegistry
from card_gateway.services.payments import PaymentOrchestrator
from card_gateway.services.tokenization import TokenizationOrchestrator
from card_gateway.services.webhooks import WebhookDispatcher

FIXED_NOW = datetime(2026, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable clock for orchestrators."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeProvider(PaymentProvider):
    """
    In-memory provider used by orchestrator and API tests.

    Each operation returns the configured result (or raises the configured
    error) and records its calls.
    """

    def __init__(self) -> None:
        self.tokenized = TokenizedCard(
            payment_token=f"{self.name.value}_tok_1",
            card_last_four="4242",
            card_brand="Visa",
            expiration_month=12,
            expiration_year=2030,
        )
        self.session_counter = 0
        self.charge_result: ChargeResult | None = None
        self.status_update: StatusUpdate | None = None
        self.webhook_update: StatusUpdate | None = None
        self.webhook_valid = True
        self.errors: dict[str, Exception] = {}
        self.calls: dict[str, list[Any]] = {}
        self.closed = False

    def _record(self, operation: str, *args: Any) -> None:
        self.calls.setdefault(operation, []).append(args)
        error = self.errors.get(operation)
        if error is not None:
            raise error

    def call_count(self, operation: str) -> int:
        return len(self.calls.get(operation, []))

    async def charge(
        self, card: PaymentCard, payment: Payment, security_token: str | None = None
    ) -> ChargeResult:
        self._record("charge", card, payment, security_token)
        if self.charge_result is not None:
            return self.charge_result
        return ChargeResult(
            status=PaymentStatus.COMPLETED,
            transaction_id=f"txn_{payment.payment_id}",
            provider_payment_id=f"txn_{payment.payment_id}",
        )

    async def refund(self, payment: Payment, amount: Decimal | None = None) -> RefundResult:
        self._record("refund", payment, amount)
        return RefundResult(refund_id="re_1", status="succeeded", amount=amount or payment.amount)

    async def get_status(self, transaction_id: str) -> StatusUpdate:
        self._record("get_status", transaction_id)
        return self.status_update or StatusUpdate(
            transaction_id=transaction_id, status=PaymentStatus.COMPLETED
        )

    def verify_webhook(self, delivery: WebhookDelivery) -> bool:
        self._record("verify_webhook", delivery)
        return self.webhook_valid

    async def handle_webhook(self, event: Mapping[str, Any]) -> StatusUpdate | None:
        self._record("handle_webhook", event)
        return self.webhook_update

    async def close(self) -> None:
        self.closed = True


class FakeDirectProvider(FakeProvider):
    name = ProviderName.STRIPE
    shape = ProviderShape.DIRECT
    signature_header = "stripe-signature"

    @property
    def supports_signed_webhooks(self) -> bool:
        return True

    async def tokenize_direct(self, request: DirectTokenizationInput) -> TokenizedCard:
        self._record("tokenize_direct", request)
        return self.tokenized


class FakeRedirectProvider(FakeProvider):
    name = ProviderName.TRANSBANK
    shape = ProviderShape.REDIRECT
    session_prefix = "tbk_"

    @property
    def callback_template(self) -> CallbackTemplate:
        return CallbackTemplate(method="POST", include_in="body", parameter_name="TBK_TOKEN")

    async def create_session(self, request: SessionInput) -> SessionHandle:
        self._record("create_session", request)
        self.session_counter += 1
        token = f"T{self.session_counter:04d}"
        return SessionHandle(
            provider_token=token,
            redirect_url="https://webpay.example/inscription",
            customer_reference=f"user-{request.user_id}",
        )

    def resolve_session_id(self, callback_data: Mapping[str, Any]) -> str | None:
        token = callback_data.get("TBK_TOKEN")
        return f"{self.session_prefix}{token}" if token else None

    async def complete_session(
        self, session: TokenizationSession, callback_data: Mapping[str, Any]
    ) -> TokenizedCard:
        self._record("complete_session", session, dict(callback_data))
        return self.tokenized


class FakeVaultProvider(FakeProvider):
    name = ProviderName.MERCADOPAGO
    shape = ProviderShape.VAULT

    def __init__(self) -> None:
        super().__init__()
        self.tokenized = TokenizedCard(
            payment_token="mp_card_1",
            card_last_four="1111",
            card_brand="master",
            requires_cvv_for_payments=True,
            customer_reference="cus_1",
        )

    async def tokenize_direct(self, request: DirectTokenizationInput) -> TokenizedCard:
        self._record("tokenize_direct", request)
        return self.tokenized


def fake_configs() -> list[ProviderConfig]:
    return [
        ProviderConfig(provider=ProviderName.STRIPE, shape=ProviderShape.DIRECT),
        ProviderConfig(
            provider=ProviderName.TRANSBANK,
            shape=ProviderShape.REDIRECT,
            environment="integration",
        ),
        ProviderConfig(provider=ProviderName.MERCADOPAGO, shape=ProviderShape.VAULT),
    ]


@pytest.fixture
def engine():
    """Fresh in-memory database per test."""
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    drop_all_tables(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def direct_provider() -> FakeDirectProvider:
    return FakeDirectProvider()


@pytest.fixture
def redirect_provider() -> FakeRedirectProvider:
    return FakeRedirectProvider()


@pytest.fixture
def vault_provider() -> FakeVaultProvider:
    return FakeVaultProvider()


@pytest.fixture
def registry(direct_provider, redirect_provider, vault_provider) -> ProviderRegistry:
    return ProviderRegistry(
        fake_configs(),
        factories={
            ProviderName.STRIPE: lambda config: direct_provider,
            ProviderName.TRANSBANK: lambda config: redirect_provider,
            ProviderName.MERCADOPAGO: lambda config: vault_provider,
        },
    )


@pytest.fixture
def tokenization(registry, session_factory, clock) -> TokenizationOrchestrator:
    return TokenizationOrchestrator(registry, session_factory, clock=clock)


@pytest.fixture
def payments(registry, session_factory, clock) -> PaymentOrchestrator:
    return PaymentOrchestrator(registry, session_factory, clock=clock)


@pytest.fixture
def webhooks(registry, payments, session_factory) -> WebhookDispatcher:
    return WebhookDispatcher(registry, payments, session_factory)
