"""
Stripe provider integration (direct tokenization shape).

Raw card data is exchanged for a PaymentMethod attached to a Customer in one
call; the PaymentMethod id is the stored payment token and the Customer id the
customer reference used for later off-session charges.

The Stripe SDK is synchronous, so every call runs in a worker thread bounded
by ``timeout_seconds``.

Reference:
- https://docs.stripe.com/api/payment_methods
- https://docs.stripe.com/api/payment_intents
- https://docs.stripe.com/webhooks#verify-manually
"""

import asyncio
from collections.abc import Callable, Mapping
from decimal import Decimal
from typing import Any, TypeVar

import stripe
import structlog

from card_gateway.domain.card import PaymentCard, TokenizedCard
from card_gateway.domain.exceptions import ProviderError, ProviderTimeout, ValidationError
from card_gateway.domain.payment import (
    ChargeResult,
    Payment,
    PaymentStatus,
    RefundResult,
    StatusUpdate,
    to_minor_units,
)
from card_gateway.providers.base import (
    DirectTokenizationInput,
    PaymentProvider,
    ProviderConfig,
    ProviderName,
    ProviderShape,
    WebhookDelivery,
)

logger = structlog.get_logger(__name__)

T = TypeVar("T")

WEBHOOK_TOLERANCE_SECONDS = 300

# Events whose data.object is the PaymentIntent itself
INTENT_EVENTS = frozenset({"payment_intent.succeeded", "payment_intent.payment_failed"})

INTENT_STATUS_MAP: dict[str, PaymentStatus] = {
    "succeeded": PaymentStatus.COMPLETED,
    "processing": PaymentStatus.PROCESSING,
    "requires_action": PaymentStatus.PROCESSING,
    "requires_confirmation": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "requires_payment_method": PaymentStatus.FAILED,
    "canceled": PaymentStatus.FAILED,
}


class StripeProvider(PaymentProvider):
    """
    Stripe payment provider implementation.

    Uses Customers + PaymentMethods for tokenization and confirmed,
    off-session PaymentIntents for charges.
    """

    name = ProviderName.STRIPE
    shape = ProviderShape.DIRECT
    signature_header = "stripe-signature"

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        timeout_seconds: float = 10.0,
    ) -> None:
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret API key (sk_test_... or sk_live_...)
            webhook_secret: Endpoint signing secret (whsec_...)
            timeout_seconds: Upper bound for each Stripe call
        """
        if not secret_key:
            raise ValueError("Stripe secret key is required")
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.timeout_seconds = timeout_seconds
        stripe.max_network_retries = 0  # retries are the caller's decision

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "StripeProvider":
        return cls(
            secret_key=config.credentials.get("secret_key", ""),
            webhook_secret=config.credentials.get("webhook_secret", ""),
            timeout_seconds=config.timeout_seconds,
        )

    @property
    def supports_signed_webhooks(self) -> bool:
        return True

    async def _call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, api_key=self.secret_key, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            logger.error("stripe_timeout", operation=getattr(func, "__qualname__", str(func)))
            raise ProviderTimeout(
                f"Stripe did not respond within {self.timeout_seconds}s",
                details={"provider": self.name.value},
            ) from e

    async def tokenize_direct(self, request: DirectTokenizationInput) -> TokenizedCard:
        """
        Create a Customer and attach a new card PaymentMethod to it.

        Raises:
            ValidationError: Card data is missing
            ProviderError: TOKENIZATION_FAILED (card rejected or Stripe failure)
            ProviderTimeout: Stripe did not answer in time
        """
        if not request.card_number or not request.card_cvv:
            raise ValidationError("Card number and CVV are required for Stripe")

        logger.info("stripe_tokenization_starting", user_id=request.user_id)

        try:
            customer = await self._call(
                stripe.Customer.create,
                name=request.card_holder_name,
                email=request.email,
                metadata={"user_id": request.user_id},
            )
            payment_method = await self._call(
                stripe.PaymentMethod.create,
                type="card",
                card={
                    "number": request.card_number,
                    "exp_month": request.card_exp_month,
                    "exp_year": request.card_exp_year,
                    "cvc": request.card_cvv,
                },
                billing_details={"name": request.card_holder_name},
            )
            await self._call(
                stripe.PaymentMethod.attach,
                payment_method.id,
                customer=customer.id,
            )
        except stripe.CardError as e:
            logger.warning("stripe_card_rejected", code=e.code, user_id=request.user_id)
            raise ProviderError(
                e.user_message or "Card was rejected by Stripe",
                code="TOKENIZATION_FAILED",
                status_code=400,
                retryable=False,
                details={"provider": self.name.value, "decline_code": e.code},
            ) from e
        except stripe.StripeError as e:
            raise _provider_error(e, "TOKENIZATION_FAILED") from e

        card = payment_method.card
        logger.info(
            "stripe_tokenization_success",
            user_id=request.user_id,
            payment_method_id=payment_method.id,
            card_brand=card.brand,
        )

        return TokenizedCard(
            payment_token=payment_method.id,
            card_last_four=card.last4,
            card_brand=card.brand,
            card_type=card.funding or "credit",
            expiration_month=card.exp_month,
            expiration_year=card.exp_year,
            requires_cvv_for_payments=False,
            customer_reference=customer.id,
            card_holder_name=request.card_holder_name,
            provider_metadata={"fingerprint": getattr(card, "fingerprint", None)},
        )

    async def charge(
        self, card: PaymentCard, payment: Payment, security_token: str | None = None
    ) -> ChargeResult:
        """
        Charge a stored PaymentMethod with a confirmed off-session PaymentIntent.

        The payment id is used as the Stripe idempotency key.
        """
        amount_minor = to_minor_units(payment.amount, payment.currency)
        logger.info(
            "stripe_charge_starting",
            payment_id=payment.payment_id,
            amount_minor=amount_minor,
            currency=payment.currency,
        )

        try:
            intent = await self._call(
                stripe.PaymentIntent.create,
                amount=amount_minor,
                currency=payment.currency.lower(),
                customer=card.customer_reference,
                payment_method=card.payment_token,
                confirm=True,
                off_session=True,
                description=payment.description,
                metadata={
                    "payment_id": payment.payment_id,
                    "service_request_id": payment.service_request_id,
                },
                idempotency_key=payment.payment_id,
            )
        except stripe.CardError as e:
            # Declines are outcomes, not errors
            logger.info(
                "stripe_charge_declined",
                payment_id=payment.payment_id,
                code=e.code,
            )
            return ChargeResult(
                status=PaymentStatus.FAILED,
                error_message=e.user_message or "Card declined",
                provider_metadata={"decline_code": e.code},
            )
        except stripe.StripeError as e:
            raise _provider_error(e, "PAYMENT_FAILED") from e

        status = INTENT_STATUS_MAP.get(intent.status, PaymentStatus.PROCESSING)
        error_message = None

        if intent.status == "requires_action":
            # Off-session charges cannot complete 3DS
            status = PaymentStatus.FAILED
            error_message = "Payment requires additional authentication"
        elif status == PaymentStatus.FAILED:
            error_message = _intent_error_message(intent)

        logger.info(
            "stripe_charge_finished",
            payment_id=payment.payment_id,
            payment_intent_id=intent.id,
            intent_status=intent.status,
        )

        return ChargeResult(
            status=status,
            transaction_id=intent.id,
            provider_payment_id=intent.id,
            error_message=error_message,
            provider_metadata={"intent_status": intent.status},
        )

    async def refund(self, payment: Payment, amount: Decimal | None = None) -> RefundResult:
        params: dict[str, Any] = {"payment_intent": payment.transaction_id}
        if amount is not None:
            params["amount"] = to_minor_units(amount, payment.currency)

        try:
            refund = await self._call(
                stripe.Refund.create,
                idempotency_key=f"refund_{payment.payment_id}",
                **params,
            )
        except stripe.StripeError as e:
            raise _provider_error(e, "REFUND_FAILED") from e

        if refund.status not in ("succeeded", "pending"):
            raise ProviderError(
                f"Stripe refund ended with status {refund.status}",
                code="REFUND_FAILED",
                retryable=False,
                details={"refund_id": refund.id, "status": refund.status},
            )

        logger.info("stripe_refund_success", payment_id=payment.payment_id, refund_id=refund.id)
        return RefundResult(
            refund_id=refund.id,
            status=refund.status,
            amount=amount if amount is not None else payment.amount,
        )

    async def get_status(self, transaction_id: str) -> StatusUpdate:
        try:
            intent = await self._call(stripe.PaymentIntent.retrieve, transaction_id)
        except stripe.StripeError as e:
            raise _provider_error(e, "STATUS_CHECK_FAILED") from e

        status = INTENT_STATUS_MAP.get(intent.status, PaymentStatus.PROCESSING)
        return StatusUpdate(
            transaction_id=intent.id,
            status=status,
            error_message=_intent_error_message(intent) if status == PaymentStatus.FAILED else None,
            provider_metadata={"intent_status": intent.status},
        )

    def verify_webhook(self, delivery: WebhookDelivery) -> bool:
        if not self.webhook_secret or not delivery.signature:
            return False
        try:
            # verify_header compares signatures in constant time
            stripe.WebhookSignature.verify_header(
                delivery.payload.decode("utf-8"),
                delivery.signature,
                self.webhook_secret,
                WEBHOOK_TOLERANCE_SECONDS,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning("stripe_webhook_signature_invalid", error=str(e))
            return False
        return True

    async def handle_webhook(self, event: Mapping[str, Any]) -> StatusUpdate | None:
        event_type = event.get("type")
        data = event.get("data")
        obj = data.get("object") if isinstance(data, Mapping) else None
        if not isinstance(obj, Mapping):
            obj = {}

        if event_type in INTENT_EVENTS and not obj.get("id"):
            logger.warning("stripe_webhook_missing_object_id", event_type=event_type, event_id=event.get("id"))
            return None

        if event_type == "payment_intent.succeeded":
            return StatusUpdate(transaction_id=obj["id"], status=PaymentStatus.COMPLETED)

        if event_type == "payment_intent.payment_failed":
            last_error = obj.get("last_payment_error") or {}
            return StatusUpdate(
                transaction_id=obj["id"],
                status=PaymentStatus.FAILED,
                error_message=last_error.get("message") or "Payment failed",
            )

        if event_type == "charge.refunded" and obj.get("payment_intent"):
            return StatusUpdate(
                transaction_id=obj["payment_intent"],
                status=PaymentStatus.REFUNDED,
                provider_metadata={"charge_id": obj.get("id")},
            )

        logger.info("stripe_webhook_ignored", event_type=event_type, event_id=event.get("id"))
        return None


def _intent_error_message(intent: Any) -> str:
    last_error = getattr(intent, "last_payment_error", None)
    message = getattr(last_error, "message", None) if last_error else None
    return message or f"Payment ended with status {intent.status}"


def _provider_error(e: "stripe.StripeError", code: str) -> ProviderError:
    """Map a Stripe SDK error onto the gateway taxonomy."""
    retryable = isinstance(e, (stripe.RateLimitError, stripe.APIConnectionError, stripe.APIError))
    logger.error(
        "stripe_error",
        error_type=type(e).__name__,
        code=code,
        retryable=retryable,
        http_status=getattr(e, "http_status", None),
    )
    return ProviderError(
        e.user_message or "Stripe request failed",
        code=code,
        retryable=retryable,
        details={
            "provider": ProviderName.STRIPE.value,
            "error_type": type(e).__name__,
            "stripe_code": getattr(e, "code", None),
        },
    )
