"""
Payment orchestrator.

Charges stored cards, refunds completed payments and applies provider-reported
status changes. A Payment record is written in ``processing`` before the
provider is called so an interrupted charge is still visible.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any

import structlog
from sqlalchemy.orm import sessionmaker

from card_gateway.domain.card import PaymentCard
from card_gateway.domain.exceptions import (
    Forbidden,
    GatewayError,
    InvalidState,
    NotFound,
    RefundInProgress,
    ValidationError,
)
from card_gateway.domain.payment import (
    REFUND_CLAIM_TTL,
    ChargeResult,
    Payment,
    PaymentStatus,
    StatusUpdate,
    can_transition,
    generate_payment_id,
)
from card_gateway.domain.session import SessionStatus
from card_gateway.domain.timeutils import utcnow
from card_gateway.infrastructure.database import session_scope
from card_gateway.infrastructure.repository import (
    CardRepository,
    PaymentRepository,
    SessionRepository,
)
from card_gateway.providers.registry import ProviderRegistry
from card_gateway.services.recovery import best_effort

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PaymentRequest:
    user_id: str
    professional_id: str
    service_request_id: str
    amount: Decimal
    currency: str
    provider: str
    description: str
    token_id: str | None = None
    session_id: str | None = None
    security_token: str | None = None


class PaymentOrchestrator:
    """Coordinates charges, refunds and status updates for payments."""

    def __init__(
        self,
        registry: ProviderRegistry,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = utcnow,
        refund_claim_ttl: timedelta = REFUND_CLAIM_TTL,
    ) -> None:
        self.registry = registry
        self.session_factory = session_factory
        self.clock = clock
        self.refund_claim_ttl = refund_claim_ttl

    async def process_payment(
        self,
        request: PaymentRequest,
        metadata: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Charge a stored card identified by token_id or by a completed session.

        Returns:
            payment_id, status, amount, currency, provider_payment_id

        Raises:
            ValidationError: Request malformed (before any record is written)
            NotFound / Forbidden / InvalidState: Card could not be resolved
            ProviderError / ProviderTimeout: Provider failure
        """
        amount = self._validate_request(request)

        payment = Payment(
            payment_id=generate_payment_id(),
            user_id=request.user_id,
            professional_id=request.professional_id,
            service_request_id=request.service_request_id,
            amount=amount,
            currency=request.currency.upper(),
            provider=request.provider.lower(),
            description=request.description,
            metadata=dict(metadata or {}),
            created_at=self.clock(),
            updated_at=self.clock(),
        )

        with session_scope(self.session_factory) as db:
            PaymentRepository(db).add(payment)

        log = logger.bind(payment_id=payment.payment_id, user_id=request.user_id, provider=payment.provider)
        log.info("payment_processing", amount=str(amount), currency=payment.currency)

        try:
            card = self._resolve_card(request)
            if card.provider != payment.provider:
                raise ValidationError(
                    "Card was tokenized with a different provider",
                    details={"card_provider": card.provider, "provider": payment.provider},
                )
            if card.requires_cvv_for_payments and not request.security_token:
                raise ValidationError(
                    "security_token is required to charge this card",
                    details={"missing_fields": ["security_token"]},
                )
            provider = self.registry.resolve(payment.provider)
            result = await provider.charge(card, payment, request.security_token)
        except Exception as e:
            log.warning(
                "payment_charge_error",
                error_type=type(e).__name__,
                error_code=getattr(e, "code", None),
            )
            self._record_failure(payment.payment_id, e)
            raise

        self._record_charge_result(payment.payment_id, card.card_id, result)

        log.info(
            "payment_charge_finished",
            status=result.status.value,
            transaction_id=result.transaction_id,
        )

        return {
            "payment_id": payment.payment_id,
            "status": result.status.value,
            "amount": str(payment.amount),
            "currency": payment.currency,
            "provider_payment_id": result.provider_payment_id,
            "error_message": result.error_message,
        }

    async def refund_payment(
        self,
        payment_id: str,
        user_id: str,
        amount: Decimal | None = None,
        metadata: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Refund a completed payment, fully or partially.

        Raises:
            NotFound: Unknown payment
            Forbidden: Caller is neither payer nor counterparty
            InvalidState: Payment is not completed
            RefundInProgress: A concurrent refund of this payment holds the lease
            ValidationError: Amount not positive or above the charged amount
        """
        with session_scope(self.session_factory) as db:
            payment = PaymentRepository(db).get(payment_id)

        if payment is None:
            raise NotFound("Payment not found", details={"payment_id": payment_id})
        if not payment.is_party(user_id):
            raise Forbidden("Not authorized to refund this payment")
        if payment.status != PaymentStatus.COMPLETED:
            raise InvalidState(
                f"Only completed payments can be refunded (status: {payment.status.value})",
                details={"payment_id": payment_id, "status": payment.status.value},
            )
        if amount is not None and (amount <= 0 or amount > payment.amount):
            raise ValidationError(
                "Refund amount must be positive and not exceed the payment amount",
                details={"amount": str(amount), "payment_amount": str(payment.amount)},
            )

        provider = self.registry.resolve(payment.provider)
        self._claim_refund(payment_id)

        try:
            refund = await provider.refund(payment, amount)
        except Exception as e:
            logger.warning(
                "payment_refund_error",
                payment_id=payment_id,
                error_type=type(e).__name__,
                error_code=getattr(e, "code", None),
            )
            best_effort(
                "payment_refund_claim_not_released",
                lambda: self._release_refund_claim(payment_id),
                payment_id=payment_id,
            )
            raise

        now = self.clock()
        refund_metadata = {
            "refund_id": refund.refund_id,
            "status": refund.status,
            "amount": str(refund.amount) if refund.amount is not None else str(payment.amount),
            "partial": amount is not None and amount < payment.amount,
            "requested_by": user_id,
            "requested_at": now.isoformat(),
            **{key: value for key, value in (metadata or {}).items() if value is not None},
        }

        with session_scope(self.session_factory) as db:
            updated = PaymentRepository(db).update_status(
                payment_id,
                PaymentStatus.REFUNDED,
                expected_status=PaymentStatus.COMPLETED,
                refunded_at=now,
                refund_metadata=refund_metadata,
                refund_claimed_until=None,
            )

        if not updated:
            # A provider webhook settled the payment while the refund was in flight
            logger.warning("payment_refund_not_recorded", payment_id=payment_id)

        logger.info("payment_refunded", payment_id=payment_id, refund_id=refund.refund_id)
        return {"message": "Payment refunded successfully", "payment_id": payment_id}

    def get_payment(self, payment_id: str, user_id: str) -> dict[str, Any]:
        payment = self._load_for_party(payment_id, user_id)
        return payment.to_view()

    async def sync_payment_status(self, payment_id: str, user_id: str) -> dict[str, Any]:
        """Ask the provider for the payment's status and apply it."""
        payment = self._load_for_party(payment_id, user_id)
        if not payment.transaction_id:
            raise InvalidState(
                "Payment has no provider transaction to check",
                details={"payment_id": payment_id},
            )

        provider = self.registry.resolve(payment.provider)
        update = await provider.get_status(payment.transaction_id)
        self._apply(payment, update)

        with session_scope(self.session_factory) as db:
            refreshed = PaymentRepository(db).get(payment_id)
        return refreshed.to_view()

    async def apply_provider_update(self, provider: str, update: StatusUpdate) -> bool:
        """
        Apply a webhook-reported status to the matching payment.

        Returns:
            True if the payment changed status
        """
        with session_scope(self.session_factory) as db:
            payment = PaymentRepository(db).get_by_transaction(provider, update.transaction_id)

        if payment is None:
            logger.info(
                "provider_update_unmatched",
                provider=provider,
                transaction_id=update.transaction_id,
            )
            return False
        return self._apply(payment, update)

    def _apply(self, payment: Payment, update: StatusUpdate) -> bool:
        if update.status == payment.status:
            return False
        if not can_transition(payment.status, update.status):
            logger.warning(
                "payment_transition_rejected",
                payment_id=payment.payment_id,
                current=payment.status.value,
                reported=update.status.value,
            )
            return False

        fields: dict[str, Any] = {}
        if update.status == PaymentStatus.FAILED:
            fields["error_message"] = update.error_message or "Payment failed at provider"
        if update.status == PaymentStatus.REFUNDED:
            now = self.clock()
            fields["refunded_at"] = now
            fields["refund_metadata"] = {
                "source": "provider",
                "reported_at": now.isoformat(),
                **update.provider_metadata,
            }

        with session_scope(self.session_factory) as db:
            changed = PaymentRepository(db).update_status(
                payment.payment_id, update.status, expected_status=payment.status, **fields
            )

        logger.info(
            "payment_status_updated",
            payment_id=payment.payment_id,
            previous=payment.status.value,
            status=update.status.value,
            changed=changed,
        )
        return changed

    def _resolve_card(self, request: PaymentRequest) -> PaymentCard:
        with session_scope(self.session_factory) as db:
            cards = CardRepository(db)

            if request.token_id:
                card = cards.get(request.token_id)
                if card is None:
                    card = cards.find_by_payment_token(request.user_id, request.token_id)
                if card is None:
                    raise NotFound("Card not found", details={"token_id": request.token_id})
                if card.user_id != request.user_id:
                    raise Forbidden("Card belongs to another user")
                return card

            session = SessionRepository(db).get(request.session_id)
            if (
                session is None
                or session.user_id != request.user_id
                or session.status != SessionStatus.COMPLETED
            ):
                raise NotFound(
                    "Session not found or not completed",
                    details={"session_id": request.session_id},
                )
            if not session.token_id:
                raise InvalidState("Session has no token", details={"session_id": request.session_id})

            card = cards.get(session.token_id)
            if card is None:
                raise NotFound("Card not found", details={"token_id": session.token_id})
            return card

    def _load_for_party(self, payment_id: str, user_id: str) -> Payment:
        with session_scope(self.session_factory) as db:
            payment = PaymentRepository(db).get(payment_id)
        if payment is None:
            raise NotFound("Payment not found", details={"payment_id": payment_id})
        if not payment.is_party(user_id):
            raise Forbidden("Not authorized to view this payment")
        return payment

    def _record_charge_result(self, payment_id: str, card_id: str, result: ChargeResult) -> None:
        fields: dict[str, Any] = {
            "card_id": card_id,
            "transaction_id": result.transaction_id,
            "provider_payment_id": result.provider_payment_id,
        }
        if result.status == PaymentStatus.FAILED:
            fields["error_message"] = result.error_message

        with session_scope(self.session_factory) as db:
            updated = PaymentRepository(db).update_status(
                payment_id,
                result.status,
                expected_status=PaymentStatus.PROCESSING,
                **fields,
            )

        if not updated:
            logger.warning("payment_result_not_recorded", payment_id=payment_id)

    def _claim_refund(self, payment_id: str) -> None:
        """
        Commit the refund lease before the provider is called.

        Raises:
            RefundInProgress: Another refund of this payment holds the lease
            InvalidState: The payment left ``completed`` since it was read
        """
        with session_scope(self.session_factory) as db:
            repo = PaymentRepository(db)
            if repo.claim_refund(payment_id, self.clock(), self.refund_claim_ttl):
                return
            current = repo.get(payment_id)

        if current is not None and current.status == PaymentStatus.COMPLETED:
            logger.info("payment_refund_claim_lost", payment_id=payment_id)
            raise RefundInProgress(
                "A refund of this payment is already in progress",
                details={"payment_id": payment_id},
            )
        status = current.status.value if current else None
        raise InvalidState(
            f"Only completed payments can be refunded (status: {status})",
            details={"payment_id": payment_id, "status": status},
        )

    def _release_refund_claim(self, payment_id: str) -> None:
        with session_scope(self.session_factory) as db:
            PaymentRepository(db).release_refund_claim(payment_id)

    def _record_failure(self, payment_id: str, error: BaseException) -> None:
        message = error.message if isinstance(error, GatewayError) else str(error)
        message = message or type(error).__name__

        def write() -> None:
            with session_scope(self.session_factory) as db:
                PaymentRepository(db).update_status(
                    payment_id,
                    PaymentStatus.FAILED,
                    expected_status=PaymentStatus.PROCESSING,
                    error_message=message,
                )

        best_effort("payment_failure_not_recorded", write, payment_id=payment_id)

    @staticmethod
    def _validate_request(request: PaymentRequest) -> Decimal:
        if bool(request.token_id) == bool(request.session_id):
            raise ValidationError(
                "Exactly one of token_id or session_id is required",
                details={"token_id": request.token_id, "session_id": request.session_id},
            )

        required = {
            "user_id": request.user_id,
            "professional_id": request.professional_id,
            "service_request_id": request.service_request_id,
            "currency": request.currency,
            "provider": request.provider,
            "description": request.description,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                details={"missing_fields": missing},
            )

        try:
            amount = Decimal(str(request.amount))
        except (InvalidOperation, TypeError, ValueError) as e:
            raise ValidationError("amount must be a number") from e
        if not amount.is_finite() or amount <= 0:
            raise ValidationError("amount must be greater than zero")
        if len(request.currency) != 3 or not request.currency.isalpha():
            raise ValidationError("currency must be a 3-letter ISO 4217 code")
        return amount
