"""
MercadoPago integration (vault tokenization shape).

The client collects card data with MercadoPago's own SDK and sends the
gateway an opaque card token. The gateway saves that token as a card on a
MercadoPago customer and charges the saved card later. Saved cards need a
fresh security-code token for each payment.

Reference:
- https://www.mercadopago.com/developers/en/reference/cards/_customers_customer_id_cards/post
- https://www.mercadopago.com/developers/en/docs/your-integrations/notifications/webhooks
"""

import hashlib
import hmac
import json
from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import httpx
import structlog

from card_gateway.domain.card import PaymentCard, TokenizedCard
from card_gateway.domain.exceptions import ValidationError
from card_gateway.domain.payment import (
    ChargeResult,
    Payment,
    PaymentStatus,
    RefundResult,
    StatusUpdate,
)
from card_gateway.providers.base import (
    DirectTokenizationInput,
    PaymentProvider,
    ProviderConfig,
    ProviderName,
    ProviderShape,
    WebhookDelivery,
)
from card_gateway.providers.http import ProviderHttpClient

logger = structlog.get_logger(__name__)

PAYMENT_STATUS_MAP: dict[str, PaymentStatus] = {
    "approved": PaymentStatus.COMPLETED,
    "authorized": PaymentStatus.PROCESSING,
    "pending": PaymentStatus.PROCESSING,
    "in_process": PaymentStatus.PROCESSING,
    "in_mediation": PaymentStatus.PROCESSING,
    "rejected": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.FAILED,
    "refunded": PaymentStatus.REFUNDED,
    "charged_back": PaymentStatus.REFUNDED,
}

CARD_TYPES = {"credit_card": "credit", "debit_card": "debit", "prepaid_card": "prepaid"}


class MercadoPagoProvider(PaymentProvider):
    """
    MercadoPago provider implementation.

    Webhooks are HMAC-signed (``x-signature``) only when a webhook secret is
    configured; without it, a payload shape check is applied instead.
    """

    name = ProviderName.MERCADOPAGO
    shape = ProviderShape.VAULT
    signature_header = "x-signature"

    def __init__(
        self,
        access_token: str,
        webhook_secret: str = "",
        base_url: str = "https://api.mercadopago.com",
        customer_email_domain: str = "example.com",
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not access_token:
            raise ValueError("MercadoPago access token is required")
        self.webhook_secret = webhook_secret
        self.customer_email_domain = customer_email_domain
        self.client = ProviderHttpClient(
            provider=self.name.value,
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout_seconds=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "MercadoPagoProvider":
        return cls(
            access_token=config.credentials.get("access_token", ""),
            webhook_secret=config.credentials.get("webhook_secret", ""),
            base_url=config.options.get("base_url", "https://api.mercadopago.com"),
            timeout_seconds=config.timeout_seconds,
        )

    @property
    def supports_signed_webhooks(self) -> bool:
        return bool(self.webhook_secret)

    async def close(self) -> None:
        await self.client.close()

    async def _find_or_create_customer(self, email: str, user_id: str) -> str:
        found = await self.client.request(
            "GET",
            "/v1/customers/search",
            error_code="TOKENIZATION_FAILED",
            params={"email": email},
        )
        results = found.get("results") or []
        if results:
            return str(results[0]["id"])

        created = await self.client.request(
            "POST",
            "/v1/customers",
            error_code="TOKENIZATION_FAILED",
            json={"email": email, "metadata": {"user_id": user_id}},
        )
        return str(created["id"])

    async def tokenize_direct(self, request: DirectTokenizationInput) -> TokenizedCard:
        """
        Save a client-SDK card token on the user's MercadoPago customer.

        Raises:
            ValidationError: No card token supplied
            ProviderError: TOKENIZATION_FAILED
        """
        if not request.card_token:
            raise ValidationError("card_token is required for MercadoPago")

        email = request.email or f"{request.user_id}@{self.customer_email_domain}"
        customer_id = await self._find_or_create_customer(email, request.user_id)

        card = await self.client.request(
            "POST",
            f"/v1/customers/{customer_id}/cards",
            error_code="TOKENIZATION_FAILED",
            json={"token": request.card_token},
        )

        payment_method = card.get("payment_method") or {}
        cardholder = card.get("cardholder") or {}

        logger.info(
            "mercadopago_card_saved",
            user_id=request.user_id,
            customer_id=customer_id,
            card_brand=payment_method.get("id"),
        )

        return TokenizedCard(
            payment_token=str(card["id"]),
            card_last_four=str(card.get("last_four_digits", "")),
            card_brand=str(payment_method.get("id") or "unknown"),
            card_type=CARD_TYPES.get(payment_method.get("payment_type_id"), "credit"),
            expiration_month=card.get("expiration_month"),
            expiration_year=card.get("expiration_year"),
            requires_cvv_for_payments=True,
            customer_reference=customer_id,
            card_holder_name=request.card_holder_name or cardholder.get("name"),
            provider_metadata={"issuer_id": (card.get("issuer") or {}).get("id")},
        )

    async def charge(
        self, card: PaymentCard, payment: Payment, security_token: str | None = None
    ) -> ChargeResult:
        if not security_token:
            raise ValidationError("security_token is required to charge a MercadoPago card")

        logger.info("mercadopago_charge_starting", payment_id=payment.payment_id)

        body = await self.client.request(
            "POST",
            "/v1/payments",
            error_code="PAYMENT_FAILED",
            headers={"X-Idempotency-Key": payment.payment_id},
            json={
                "transaction_amount": float(payment.amount),
                "token": security_token,
                "description": payment.description,
                "installments": 1,
                "payment_method_id": card.card_brand,
                "external_reference": payment.payment_id,
                "payer": {"type": "customer", "id": card.customer_reference},
                "metadata": {"service_request_id": payment.service_request_id},
            },
        )

        raw_status = body.get("status")
        status = PAYMENT_STATUS_MAP.get(raw_status, PaymentStatus.PROCESSING)
        if status == PaymentStatus.REFUNDED:  # approved first, refunded since
            status = PaymentStatus.COMPLETED

        logger.info(
            "mercadopago_charge_finished",
            payment_id=payment.payment_id,
            mercadopago_payment_id=body.get("id"),
            status=raw_status,
        )

        transaction_id = str(body["id"]) if body.get("id") is not None else None
        return ChargeResult(
            status=status,
            transaction_id=transaction_id,
            provider_payment_id=transaction_id,
            authorization_code=body.get("authorization_code"),
            error_message=(
                f"MercadoPago rejected the payment: {body.get('status_detail') or raw_status}"
                if status == PaymentStatus.FAILED
                else None
            ),
            provider_metadata={"status_detail": body.get("status_detail")},
        )

    async def refund(self, payment: Payment, amount: Decimal | None = None) -> RefundResult:
        json_body = {"amount": float(amount)} if amount is not None else {}
        body = await self.client.request(
            "POST",
            f"/v1/payments/{payment.transaction_id}/refunds",
            error_code="REFUND_FAILED",
            headers={"X-Idempotency-Key": f"refund_{payment.payment_id}"},
            json=json_body,
        )
        logger.info("mercadopago_refund_success", payment_id=payment.payment_id, refund_id=body.get("id"))
        return RefundResult(
            refund_id=str(body.get("id")) if body.get("id") is not None else None,
            status=str(body.get("status") or "approved"),
            amount=amount if amount is not None else payment.amount,
        )

    async def get_status(self, transaction_id: str) -> StatusUpdate:
        body = await self.client.request(
            "GET", f"/v1/payments/{transaction_id}", error_code="STATUS_CHECK_FAILED"
        )
        raw_status = body.get("status")
        status = PAYMENT_STATUS_MAP.get(raw_status, PaymentStatus.PROCESSING)
        return StatusUpdate(
            transaction_id=str(body.get("id", transaction_id)),
            status=status,
            error_message=(
                f"MercadoPago rejected the payment: {body.get('status_detail') or raw_status}"
                if status == PaymentStatus.FAILED
                else None
            ),
            provider_metadata={"status_detail": body.get("status_detail")},
        )

    def verify_webhook(self, delivery: WebhookDelivery) -> bool:
        if not self.webhook_secret:
            # Unsigned mode: only accept well-formed notifications
            return b'"data"' in delivery.payload and b'"type"' in delivery.payload
        if not delivery.signature:
            return False
        return self._verify_signature(delivery)

    def _verify_signature(self, delivery: WebhookDelivery) -> bool:
        """
        Verify ``x-signature: ts=<unix>,v1=<hex hmac>``.

        The signed manifest is ``id:<data.id>;request-id:<x-request-id>;ts:<ts>;``.
        """
        parts = dict(
            item.strip().split("=", 1) for item in delivery.signature.split(",") if "=" in item
        )
        ts = parts.get("ts")
        received = parts.get("v1")
        if not ts or not received:
            return False

        data_id = _extract_data_id(delivery.payload)
        request_id = _header(delivery.headers, "x-request-id")

        manifest = ""
        if data_id:
            manifest += f"id:{data_id.lower()};"
        if request_id:
            manifest += f"request-id:{request_id};"
        manifest += f"ts:{ts};"

        expected = hmac.new(
            self.webhook_secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256
        ).hexdigest()
        return hmac.compare_digest(expected, received)

    def extract_event_id(self, event: Mapping[str, Any]) -> str | None:
        if event.get("id") is not None:
            return str(event["id"])
        data_id = (event.get("data") or {}).get("id")
        return f"{event.get('type')}:{data_id}" if data_id else None

    async def handle_webhook(self, event: Mapping[str, Any]) -> StatusUpdate | None:
        """Payment notifications carry only an id: fetch the payment to learn its status."""
        event_type = event.get("type") or event.get("topic")
        data_id = (event.get("data") or {}).get("id")

        if event_type != "payment" or not data_id:
            logger.info("mercadopago_webhook_ignored", event_type=event_type)
            return None

        return await self.get_status(str(data_id))


def _header(headers: Mapping[str, str], name: str) -> str | None:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def _extract_data_id(payload: bytes) -> str | None:
    try:
        event = json.loads(payload)
    except ValueError:
        return None
    if not isinstance(event, dict):
        return None
    data_id = (event.get("data") or {}).get("id")
    return str(data_id) if data_id is not None else None
