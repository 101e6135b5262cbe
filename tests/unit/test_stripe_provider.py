"""Unit tests for the Stripe provider integration."""

import json
import time
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import stripe

from card_gateway.domain.card import PaymentCard
from card_gateway.domain.exceptions import ProviderError, ProviderTimeout, ValidationError
from card_gateway.domain.payment import Payment, PaymentStatus
from card_gateway.providers.base import DirectTokenizationInput, WebhookDelivery
from card_gateway.providers.stripe_provider import StripeProvider

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def stripe_provider() -> StripeProvider:
    """Create a StripeProvider instance for testing."""
    return StripeProvider(secret_key="sk_test_fake_key", webhook_secret=WEBHOOK_SECRET, timeout_seconds=5)


@pytest.fixture
def card_input() -> DirectTokenizationInput:
    return DirectTokenizationInput(
        user_id="user_1",
        card_number="4242424242424242",
        card_exp_month=12,
        card_exp_year=2030,
        card_cvv="123",
        card_holder_name="Test Customer",
    )


@pytest.fixture
def stored_card() -> PaymentCard:
    return PaymentCard(
        card_id="card_1",
        user_id="user_1",
        provider="stripe",
        payment_token="pm_test123",
        card_last_four="4242",
        card_brand="visa",
        customer_reference="cus_test123",
    )


@pytest.fixture
def payment() -> Payment:
    return Payment(
        payment_id="pay_test123",
        user_id="user_1",
        professional_id="pro_1",
        service_request_id="sr_1",
        amount=Decimal("10.50"),
        currency="USD",
        provider="stripe",
        description="Repair",
        transaction_id="pi_test123",
    )


def mock_intent(status: str = "succeeded", intent_id: str = "pi_test123") -> MagicMock:
    intent = MagicMock()
    intent.id = intent_id
    intent.status = status
    intent.last_payment_error = None
    return intent


def sign(payload: str, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signature = stripe.WebhookSignature._compute_signature(f"{timestamp}.{payload}", secret)
    return f"t={timestamp},v1={signature}"


class TestStripeTokenization:
    @pytest.mark.asyncio
    async def test_tokenize_creates_customer_and_attaches_method(self, stripe_provider, card_input):
        customer = MagicMock()
        customer.id = "cus_test123"

        payment_method = MagicMock()
        payment_method.id = "pm_test123"
        payment_method.card.last4 = "4242"
        payment_method.card.brand = "visa"
        payment_method.card.funding = "credit"
        payment_method.card.exp_month = 12
        payment_method.card.exp_year = 2030

        with patch.object(stripe.Customer, "create", return_value=customer) as create_customer, patch.object(
            stripe.PaymentMethod, "create", return_value=payment_method
        ) as create_method, patch.object(stripe.PaymentMethod, "attach") as attach:
            result = await stripe_provider.tokenize_direct(card_input)

        assert result.payment_token == "pm_test123"
        assert result.card_last_four == "4242"
        assert result.card_brand == "visa"
        assert result.customer_reference == "cus_test123"
        assert result.requires_cvv_for_payments is False

        assert create_customer.call_args.kwargs["api_key"] == "sk_test_fake_key"
        assert create_method.call_args.kwargs["card"]["cvc"] == "123"
        attach.assert_called_once()
        assert attach.call_args.args == ("pm_test123",)
        assert attach.call_args.kwargs["customer"] == "cus_test123"

    @pytest.mark.asyncio
    async def test_card_error_is_terminal(self, stripe_provider, card_input):
        customer = MagicMock()
        customer.id = "cus_test123"
        error = stripe.CardError("Your card number is incorrect.", "number", "incorrect_number")

        with patch.object(stripe.Customer, "create", return_value=customer), patch.object(
            stripe.PaymentMethod, "create", side_effect=error
        ):
            with pytest.raises(ProviderError) as exc_info:
                await stripe_provider.tokenize_direct(card_input)

        assert exc_info.value.code == "TOKENIZATION_FAILED"
        assert exc_info.value.retryable is False
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_card_data(self, stripe_provider):
        with pytest.raises(ValidationError):
            await stripe_provider.tokenize_direct(DirectTokenizationInput(user_id="user_1"))


class TestStripeCharge:
    @pytest.mark.asyncio
    async def test_successful_charge(self, stripe_provider, stored_card, payment):
        with patch.object(stripe.PaymentIntent, "create", return_value=mock_intent()) as create:
            result = await stripe_provider.charge(stored_card, payment)

        assert result.status == PaymentStatus.COMPLETED
        assert result.transaction_id == "pi_test123"

        kwargs = create.call_args.kwargs
        assert kwargs["amount"] == 1050
        assert kwargs["currency"] == "usd"
        assert kwargs["customer"] == "cus_test123"
        assert kwargs["payment_method"] == "pm_test123"
        assert kwargs["confirm"] is True
        assert kwargs["off_session"] is True
        assert kwargs["idempotency_key"] == "pay_test123"

    @pytest.mark.asyncio
    async def test_decline_is_failed_outcome(self, stripe_provider, stored_card, payment):
        error = stripe.CardError("Your card was declined.", None, "card_declined")

        with patch.object(stripe.PaymentIntent, "create", side_effect=error):
            result = await stripe_provider.charge(stored_card, payment)

        assert result.status == PaymentStatus.FAILED
        assert result.error_message == "Your card was declined."
        assert result.provider_metadata["decline_code"] == "card_declined"

    @pytest.mark.asyncio
    async def test_requires_action_fails_off_session(self, stripe_provider, stored_card, payment):
        with patch.object(stripe.PaymentIntent, "create", return_value=mock_intent("requires_action")):
            result = await stripe_provider.charge(stored_card, payment)

        assert result.status == PaymentStatus.FAILED
        assert "authentication" in result.error_message

    @pytest.mark.asyncio
    async def test_processing_intent(self, stripe_provider, stored_card, payment):
        with patch.object(stripe.PaymentIntent, "create", return_value=mock_intent("processing")):
            result = await stripe_provider.charge(stored_card, payment)

        assert result.status == PaymentStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_rate_limit_is_retryable(self, stripe_provider, stored_card, payment):
        with patch.object(stripe.PaymentIntent, "create", side_effect=stripe.RateLimitError("Too many requests")):
            with pytest.raises(ProviderError) as exc_info:
                await stripe_provider.charge(stored_card, payment)

        assert exc_info.value.code == "PAYMENT_FAILED"
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_invalid_request_is_terminal(self, stripe_provider, stored_card, payment):
        error = stripe.InvalidRequestError("No such payment_method", "payment_method")

        with patch.object(stripe.PaymentIntent, "create", side_effect=error):
            with pytest.raises(ProviderError) as exc_info:
                await stripe_provider.charge(stored_card, payment)

        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_timeout(self, stored_card, payment):
        provider = StripeProvider(secret_key="sk_test_fake_key", timeout_seconds=0.05)

        def slow(*args, **kwargs):
            time.sleep(0.5)
            return mock_intent()

        with patch.object(stripe.PaymentIntent, "create", side_effect=slow):
            with pytest.raises(ProviderTimeout):
                await provider.charge(stored_card, payment)


class TestStripeRefundAndStatus:
    @pytest.mark.asyncio
    async def test_partial_refund(self, stripe_provider, payment):
        refund = MagicMock()
        refund.id = "re_123"
        refund.status = "succeeded"

        with patch.object(stripe.Refund, "create", return_value=refund) as create:
            result = await stripe_provider.refund(payment, Decimal("5.00"))

        assert result.refund_id == "re_123"
        assert result.amount == Decimal("5.00")
        assert create.call_args.kwargs["payment_intent"] == "pi_test123"
        assert create.call_args.kwargs["amount"] == 500
        assert create.call_args.kwargs["idempotency_key"] == "refund_pay_test123"

    @pytest.mark.asyncio
    async def test_failed_refund_status(self, stripe_provider, payment):
        refund = MagicMock()
        refund.id = "re_123"
        refund.status = "failed"

        with patch.object(stripe.Refund, "create", return_value=refund):
            with pytest.raises(ProviderError) as exc_info:
                await stripe_provider.refund(payment)

        assert exc_info.value.code == "REFUND_FAILED"

    @pytest.mark.asyncio
    async def test_get_status(self, stripe_provider):
        with patch.object(stripe.PaymentIntent, "retrieve", return_value=mock_intent("canceled")):
            update = await stripe_provider.get_status("pi_test123")

        assert update.status == PaymentStatus.FAILED
        assert update.error_message == "Payment ended with status canceled"


class TestStripeWebhooks:
    def test_valid_signature(self, stripe_provider):
        payload = json.dumps({"id": "evt_1", "type": "payment_intent.succeeded"})

        delivery = WebhookDelivery(payload=payload.encode(), signature=sign(payload))

        assert stripe_provider.verify_webhook(delivery)

    def test_wrong_secret(self, stripe_provider):
        payload = json.dumps({"id": "evt_1"})

        delivery = WebhookDelivery(payload=payload.encode(), signature=sign(payload, "whsec_other"))

        assert not stripe_provider.verify_webhook(delivery)

    def test_tampered_payload(self, stripe_provider):
        payload = json.dumps({"id": "evt_1", "amount": 100})
        signature = sign(payload)

        delivery = WebhookDelivery(payload=payload.replace("100", "999").encode(), signature=signature)

        assert not stripe_provider.verify_webhook(delivery)

    def test_missing_signature_or_secret(self):
        payload = b'{"id": "evt_1"}'
        assert not StripeProvider("sk_test_1", webhook_secret=WEBHOOK_SECRET).verify_webhook(
            WebhookDelivery(payload=payload)
        )
        assert not StripeProvider("sk_test_1").verify_webhook(
            WebhookDelivery(payload=payload, signature="t=1,v1=abc")
        )

    @pytest.mark.asyncio
    async def test_handle_webhook_events(self, stripe_provider):
        succeeded = await stripe_provider.handle_webhook(
            {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}}
        )
        failed = await stripe_provider.handle_webhook(
            {
                "type": "payment_intent.payment_failed",
                "data": {"object": {"id": "pi_2", "last_payment_error": {"message": "Insufficient funds"}}},
            }
        )
        refunded = await stripe_provider.handle_webhook(
            {"type": "charge.refunded", "data": {"object": {"id": "ch_1", "payment_intent": "pi_3"}}}
        )
        ignored = await stripe_provider.handle_webhook({"type": "customer.created", "data": {"object": {}}})

        assert (succeeded.transaction_id, succeeded.status) == ("pi_1", PaymentStatus.COMPLETED)
        assert (failed.status, failed.error_message) == (PaymentStatus.FAILED, "Insufficient funds")
        assert (refunded.transaction_id, refunded.status) == ("pi_3", PaymentStatus.REFUNDED)
        assert ignored is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event",
        [
            {"id": "evt_1", "type": "payment_intent.succeeded", "data": {"object": {}}},
            {"id": "evt_2", "type": "payment_intent.payment_failed", "data": {"object": {"status": "failed"}}},
            {"id": "evt_3", "type": "payment_intent.succeeded", "data": "not-an-object"},
            {"id": "evt_4", "type": "payment_intent.succeeded"},
        ],
    )
    async def test_event_without_intent_id_is_ignored(self, stripe_provider, event):
        assert await stripe_provider.handle_webhook(event) is None
