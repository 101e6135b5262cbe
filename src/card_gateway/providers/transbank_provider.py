"""
Transbank Oneclick Mall integration (redirect tokenization shape).

Enrollment ("inscription") happens on a Transbank-hosted page: the gateway
starts an inscription, the user is redirected to ``url_webpay`` and Transbank
posts ``TBK_TOKEN`` back to the return URL, where the inscription is finished
and a ``tbk_user`` (the stored payment token) is obtained.

Reference:
- https://www.transbankdevelopers.cl/referencia/oneclick
"""

import ipaddress
from collections.abc import Mapping
from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any
from uuid import uuid4

import httpx
import structlog

from card_gateway.domain.card import PaymentCard, TokenizedCard
from card_gateway.domain.exceptions import InscriptionCancelled, ProviderError, ValidationError
from card_gateway.domain.payment import (
    ChargeResult,
    Payment,
    PaymentStatus,
    RefundResult,
    StatusUpdate,
)
from card_gateway.domain.session import TokenizationSession
from card_gateway.domain.timeutils import utcnow
from card_gateway.providers.base import (
    CallbackTemplate,
    PaymentProvider,
    ProviderConfig,
    ProviderName,
    ProviderShape,
    SessionHandle,
    SessionInput,
    WebhookDelivery,
)
from card_gateway.providers.http import ProviderHttpClient

logger = structlog.get_logger(__name__)

HOSTS = {
    "integration": "https://webpay3gint.transbank.cl",
    "production": "https://webpay3g.transbank.cl",
}
API_PATH = "/rswebpaytransaction/api/oneclick/v1.2"

TOKEN_PARAMETER = "TBK_TOKEN"
ABORT_PARAMETERS = ("TBK_ORDEN_COMPRA", "TBK_ID_SESION")

INSCRIPTION_CANCELLED_CODE = -96
INSCRIPTION_LIFETIME = timedelta(days=365)

# Oneclick usernames are capped at 40 characters
USERNAME_MAX_LENGTH = 40

BRAND_ALIASES = {
    "americanexpress": "amex",
    "american express": "amex",
    "master": "mastercard",
}
DEBIT_CARD_TYPES = frozenset({"redcompra", "prepago"})

DETAIL_STATUS_MAP: dict[str, PaymentStatus] = {
    "AUTHORIZED": PaymentStatus.COMPLETED,
    "FAILED": PaymentStatus.FAILED,
    "REVERSED": PaymentStatus.REFUNDED,
    "NULLIFIED": PaymentStatus.REFUNDED,
    "PARTIALLY_NULLIFIED": PaymentStatus.COMPLETED,
    "CAPTURED": PaymentStatus.COMPLETED,
}


class TransbankProvider(PaymentProvider):
    """
    Transbank Oneclick Mall provider.

    Session ids are ``tbk_<token>`` so the callback's TBK_TOKEN maps straight
    to the stored session. Inscriptions are valid for a year and charges do
    not require the CVV.
    """

    name = ProviderName.TRANSBANK
    shape = ProviderShape.REDIRECT
    session_prefix = "tbk_"

    def __init__(
        self,
        commerce_code: str,
        api_key: str,
        environment: str = "integration",
        child_commerce_code: str | None = None,
        inscription_email_domain: str = "example.com",
        webhook_allowed_ips: list[str] | None = None,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize Transbank provider.

        Args:
            commerce_code: Mall commerce code, sent as Tbk-Api-Key-Id
            api_key: Secret, sent as Tbk-Api-Key-Secret
            environment: "integration" or "production"
            child_commerce_code: Store code used in transaction details
            inscription_email_domain: Domain for synthetic inscription emails
            webhook_allowed_ips: Source addresses trusted for notifications
            timeout_seconds: Upper bound for each Transbank call
            transport: Optional httpx transport (tests)
        """
        if not commerce_code or not api_key:
            raise ValueError("Transbank commerce code and API key are required")
        if environment not in HOSTS:
            raise ValueError(f"Unknown Transbank environment: {environment}")

        self.commerce_code = commerce_code
        self.child_commerce_code = child_commerce_code or commerce_code
        self.environment = environment
        self.inscription_email_domain = inscription_email_domain
        self.webhook_allowed_ips = [
            ipaddress.ip_network(ip, strict=False) for ip in (webhook_allowed_ips or [])
        ]
        self.client = ProviderHttpClient(
            provider=self.name.value,
            base_url=HOSTS[environment] + API_PATH,
            headers={
                "Tbk-Api-Key-Id": commerce_code,
                "Tbk-Api-Key-Secret": api_key,
                "Content-Type": "application/json",
            },
            timeout_seconds=timeout_seconds,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config: ProviderConfig) -> "TransbankProvider":
        return cls(
            commerce_code=config.credentials.get("commerce_code", ""),
            api_key=config.credentials.get("api_key", ""),
            environment=config.environment,
            child_commerce_code=config.options.get("child_commerce_code"),
            inscription_email_domain=config.options.get("inscription_email_domain", "example.com"),
            webhook_allowed_ips=list(config.options.get("webhook_allowed_ips", [])),
            timeout_seconds=config.timeout_seconds,
        )

    @property
    def callback_template(self) -> CallbackTemplate:
        return CallbackTemplate(method="POST", include_in="body", parameter_name=TOKEN_PARAMETER)

    async def close(self) -> None:
        await self.client.close()

    async def create_session(self, request: SessionInput) -> SessionHandle:
        """
        Start an inscription and return the hosted enrollment page.

        A fresh username is generated per inscription; it is stored as the
        session's customer reference and reused for every charge on the card.
        """
        username = uuid4().hex[:USERNAME_MAX_LENGTH]
        email = request.email or f"{username}@{self.inscription_email_domain}"

        logger.info("transbank_inscription_starting", user_id=request.user_id)

        body = await self.client.request(
            "POST",
            "/inscriptions",
            error_code="SESSION_CREATION_FAILED",
            json={"username": username, "email": email, "response_url": request.return_url},
        )

        token = body.get("token")
        url_webpay = body.get("url_webpay")
        if not token or not url_webpay:
            raise ProviderError(
                "Transbank did not return an inscription token",
                code="SESSION_CREATION_FAILED",
                details={"provider": self.name.value},
            )

        logger.info("transbank_inscription_started", user_id=request.user_id)
        return SessionHandle(
            provider_token=token,
            redirect_url=url_webpay,
            customer_reference=username,
            provider_metadata={"email": email},
        )

    def resolve_session_id(self, callback_data: Mapping[str, Any]) -> str | None:
        token = callback_data.get(TOKEN_PARAMETER)
        if token:
            return f"{self.session_prefix}{token}"
        if any(callback_data.get(param) for param in ABORT_PARAMETERS):
            # Timeout on the hosted page: no token comes back
            raise InscriptionCancelled(
                "Inscription was aborted or timed out",
                details={"provider": self.name.value},
            )
        return super().resolve_session_id(callback_data)

    async def complete_session(
        self, session: TokenizationSession, callback_data: Mapping[str, Any]
    ) -> TokenizedCard:
        """
        Finish the inscription and turn it into a tokenized card.

        Raises:
            InscriptionCancelled: User aborted the enrollment (response code -96)
            ProviderError: TOKENIZATION_COMPLETION_FAILED for any other rejection
        """
        if any(callback_data.get(param) for param in ABORT_PARAMETERS):
            raise InscriptionCancelled(
                "Inscription was cancelled by the user",
                details={"session_id": session.session_id},
            )

        token = callback_data.get(TOKEN_PARAMETER) or session.provider_token
        if not token:
            raise ValidationError("Missing TBK_TOKEN")

        body = await self.client.request(
            "PUT",
            f"/inscriptions/{token}",
            error_code="TOKENIZATION_COMPLETION_FAILED",
        )

        response_code = body.get("response_code")
        if response_code == INSCRIPTION_CANCELLED_CODE:
            logger.info("transbank_inscription_cancelled", session_id=session.session_id)
            raise InscriptionCancelled(
                "Inscription was cancelled by the user",
                details={"session_id": session.session_id, "response_code": response_code},
            )
        if response_code != 0 or not body.get("tbk_user"):
            logger.warning(
                "transbank_inscription_rejected",
                session_id=session.session_id,
                response_code=response_code,
            )
            raise ProviderError(
                f"Transbank rejected the inscription (response_code {response_code})",
                code="TOKENIZATION_COMPLETION_FAILED",
                retryable=False,
                details={"response_code": response_code},
            )

        raw_type = str(body.get("card_type") or "unknown").strip()
        brand = BRAND_ALIASES.get(raw_type.lower(), raw_type.lower())
        card_number = str(body.get("card_number") or "")

        logger.info(
            "transbank_inscription_finished",
            session_id=session.session_id,
            card_brand=brand,
        )

        return TokenizedCard(
            payment_token=body["tbk_user"],
            card_last_four=card_number[-4:] if len(card_number) >= 4 else "0000",
            card_brand=brand,
            card_type="debit" if brand in DEBIT_CARD_TYPES else "credit",
            authorization_code=body.get("authorization_code"),
            token_expires_at=utcnow() + INSCRIPTION_LIFETIME,
            requires_cvv_for_payments=False,
            customer_reference=session.customer_reference,
        )

    async def charge(
        self, card: PaymentCard, payment: Payment, security_token: str | None = None
    ) -> ChargeResult:
        """Authorize a Oneclick Mall transaction with a single store detail."""
        if not card.customer_reference:
            raise ValidationError("Card has no Transbank username")

        amount = int(payment.amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        logger.info("transbank_charge_starting", payment_id=payment.payment_id, amount=amount)

        body = await self.client.request(
            "POST",
            "/transactions",
            error_code="PAYMENT_FAILED",
            json={
                "username": card.customer_reference,
                "tbk_user": card.payment_token,
                "buy_order": payment.payment_id,
                "details": [
                    {
                        "commerce_code": self.child_commerce_code,
                        "buy_order": payment.payment_id,
                        "amount": amount,
                        "installments_number": 1,
                    }
                ],
            },
        )

        details = body.get("details") or [{}]
        detail = details[0]
        response_code = detail.get("response_code")

        if response_code == 0:
            logger.info("transbank_charge_authorized", payment_id=payment.payment_id)
            return ChargeResult(
                status=PaymentStatus.COMPLETED,
                transaction_id=body.get("buy_order", payment.payment_id),
                provider_payment_id=detail.get("authorization_code"),
                authorization_code=detail.get("authorization_code"),
                provider_metadata={
                    "payment_type_code": detail.get("payment_type_code"),
                    "accounting_date": body.get("accounting_date"),
                },
            )

        logger.info(
            "transbank_charge_rejected",
            payment_id=payment.payment_id,
            response_code=response_code,
        )
        return ChargeResult(
            status=PaymentStatus.FAILED,
            transaction_id=body.get("buy_order", payment.payment_id),
            error_message=f"Transbank rejected the transaction (response_code {response_code})",
            provider_metadata={"response_code": response_code},
        )

    async def refund(self, payment: Payment, amount: Decimal | None = None) -> RefundResult:
        refund_amount = amount if amount is not None else payment.amount
        body = await self.client.request(
            "POST",
            f"/transactions/{payment.transaction_id}/refunds",
            error_code="REFUND_FAILED",
            json={
                "commerce_code": self.child_commerce_code,
                "detail_buy_order": payment.payment_id,
                "amount": int(refund_amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP)),
            },
        )

        refund_type = body.get("type")
        response_code = body.get("response_code", 0)
        if refund_type not in ("REVERSED", "NULLIFIED") or response_code != 0:
            raise ProviderError(
                "Transbank refund was rejected",
                code="REFUND_FAILED",
                retryable=False,
                details={"type": refund_type, "response_code": response_code},
            )

        logger.info("transbank_refund_success", payment_id=payment.payment_id, type=refund_type)
        return RefundResult(
            refund_id=body.get("authorization_code"),
            status=refund_type,
            amount=refund_amount,
            provider_metadata={"nullified_amount": body.get("nullified_amount")},
        )

    async def get_status(self, transaction_id: str) -> StatusUpdate:
        body = await self.client.request(
            "GET", f"/transactions/{transaction_id}", error_code="STATUS_CHECK_FAILED"
        )
        details = body.get("details") or [{}]
        raw_status = details[0].get("status")
        status = DETAIL_STATUS_MAP.get(raw_status, PaymentStatus.PROCESSING)
        return StatusUpdate(
            transaction_id=transaction_id,
            status=status,
            error_message=(
                f"Transbank reports status {raw_status}" if status == PaymentStatus.FAILED else None
            ),
            provider_metadata={"detail_status": raw_status},
        )

    def verify_webhook(self, delivery: WebhookDelivery) -> bool:
        """Transbank does not sign notifications: allowlist the sender instead."""
        if not delivery.payload:
            return False
        if not self.webhook_allowed_ips:
            return True
        if not delivery.client_ip:
            return False
        try:
            address = ipaddress.ip_address(delivery.client_ip)
        except ValueError:
            return False
        return any(address in network for network in self.webhook_allowed_ips)

    async def handle_webhook(self, event: Mapping[str, Any]) -> StatusUpdate | None:
        logger.info("transbank_webhook_received", keys=sorted(event.keys()))
        return None
