"""Repository layer for sessions, cards, payments and webhook events.

Repositories translate between ORM rows and domain dataclasses. They never
commit: transaction boundaries belong to the caller's ``session_scope``.
State-changing updates are conditional (``UPDATE ... WHERE <expected state>``)
and report through their return value whether they took effect.
"""

from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from card_gateway.domain.card import CardIdentity, PaymentCard
from card_gateway.domain.payment import Payment, PaymentStatus
from card_gateway.domain.session import SessionStatus, SessionType, TokenizationSession
from card_gateway.domain.timeutils import as_utc, utcnow
from card_gateway.infrastructure.models import (
    PaymentCardModel,
    PaymentModel,
    TokenizationSessionModel,
    WebhookEventModel,
)

logger = structlog.get_logger(__name__)


def _conditional_update(session: Session, stmt: Any) -> bool:
    result = session.execute(stmt.execution_options(synchronize_session=False))
    return result.rowcount == 1


class SessionRepository:
    """Repository for tokenization sessions."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, entity: TokenizationSession) -> None:
        """Insert a new session.

        Raises:
            IntegrityError: If session_id already exists
        """
        self.session.add(
            TokenizationSessionModel(
                session_id=entity.session_id,
                user_id=entity.user_id,
                provider=entity.provider,
                status=entity.status.value,
                type=entity.type.value,
                token_id=entity.token_id,
                set_as_default=entity.set_as_default,
                return_url=entity.return_url,
                finish_redirect_url=entity.finish_redirect_url,
                alias=entity.alias,
                provider_token=entity.provider_token,
                customer_reference=entity.customer_reference,
                created_at=entity.created_at,
                expires_at=entity.expires_at,
                completed_at=entity.completed_at,
                last_attempt_at=entity.last_attempt_at,
                claimed_until=entity.claimed_until,
                session_metadata=entity.metadata or None,
                error_code=entity.error_code,
                error_message=entity.error_message,
                version=entity.version,
            )
        )
        self.session.flush()
        logger.debug("session_saved", session_id=entity.session_id, status=entity.status.value)

    def get(self, session_id: str) -> TokenizationSession | None:
        model = self.session.get(TokenizationSessionModel, session_id)
        return self._to_domain_entity(model) if model else None

    def claim_for_completion(
        self, session_id: str, expected_version: int, now: datetime, lease: timedelta
    ) -> bool:
        """
        Take the completion claim for a non-completed session.

        Succeeds only if nobody else bumped ``version`` since the caller read
        the session and no other claim is still within its lease. The caller
        must commit before calling the provider.
        """
        M = TokenizationSessionModel
        return _conditional_update(
            self.session,
            update(M)
            .where(
                M.session_id == session_id,
                M.status != SessionStatus.COMPLETED.value,
                M.version == expected_version,
                or_(M.claimed_until.is_(None), M.claimed_until <= now),
            )
            .values(version=M.version + 1, last_attempt_at=now, claimed_until=now + lease),
        )

    def mark_completed(self, session_id: str, version: int, token_id: str, now: datetime) -> bool:
        """Complete the session if the caller still holds the claim at ``version``."""
        M = TokenizationSessionModel
        return _conditional_update(
            self.session,
            update(M)
            .where(
                M.session_id == session_id,
                M.status != SessionStatus.COMPLETED.value,
                M.version == version,
            )
            .values(
                status=SessionStatus.COMPLETED.value,
                token_id=token_id,
                completed_at=now,
                error_code=None,
                error_message=None,
                claimed_until=None,
            ),
        )

    def mark_failed(
        self,
        session_id: str,
        error_code: str,
        error_message: str,
        version: int | None = None,
    ) -> bool:
        """Record a failed attempt. A completed session is never downgraded."""
        M = TokenizationSessionModel
        conditions = [M.session_id == session_id, M.status != SessionStatus.COMPLETED.value]
        if version is not None:
            conditions.append(M.version == version)
        return _conditional_update(
            self.session,
            update(M)
            .where(*conditions)
            .values(
                status=SessionStatus.FAILED.value,
                error_code=error_code,
                error_message=error_message,
                claimed_until=None,
            ),
        )

    @staticmethod
    def _to_domain_entity(model: TokenizationSessionModel) -> TokenizationSession:
        return TokenizationSession(
            session_id=model.session_id,
            user_id=model.user_id,
            provider=model.provider,
            status=SessionStatus(model.status),
            type=SessionType(model.type),
            created_at=as_utc(model.created_at),
            token_id=model.token_id,
            set_as_default=model.set_as_default,
            return_url=model.return_url,
            finish_redirect_url=model.finish_redirect_url,
            alias=model.alias,
            provider_token=model.provider_token,
            customer_reference=model.customer_reference,
            expires_at=as_utc(model.expires_at),
            completed_at=as_utc(model.completed_at),
            last_attempt_at=as_utc(model.last_attempt_at),
            claimed_until=as_utc(model.claimed_until),
            metadata=dict(model.session_metadata or {}),
            error_code=model.error_code,
            error_message=model.error_message,
            version=model.version,
        )


class CardRepository:
    """Repository for stored cards."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, card: PaymentCard) -> None:
        """Insert a card.

        Raises:
            IntegrityError: If a card with the same identity already exists
        """
        self.session.add(
            PaymentCardModel(
                card_id=card.card_id,
                user_id=card.user_id,
                provider=card.provider,
                payment_token=card.payment_token,
                card_last_four=card.card_last_four,
                card_brand=card.card_brand,
                card_type=card.card_type,
                card_holder_name=card.card_holder_name,
                alias=card.alias,
                expiration_month=card.expiration_month,
                expiration_year=card.expiration_year,
                is_default=card.is_default,
                authorization_code=card.authorization_code,
                token_expires_at=card.token_expires_at,
                requires_cvv_for_payments=card.requires_cvv_for_payments,
                customer_reference=card.customer_reference,
                created_at=card.created_at,
                updated_at=card.updated_at,
            )
        )
        self.session.flush()

    def get(self, card_id: str) -> PaymentCard | None:
        model = self.session.get(PaymentCardModel, card_id)
        return self._to_domain_entity(model) if model else None

    def find_by_identity(self, identity: CardIdentity) -> PaymentCard | None:
        M = PaymentCardModel
        model = self.session.scalars(
            select(M).where(
                M.user_id == identity.user_id,
                M.provider == identity.provider,
                M.payment_token == identity.payment_token,
                M.card_last_four == identity.card_last_four,
                M.card_brand == identity.card_brand,
            )
        ).first()
        return self._to_domain_entity(model) if model else None

    def find_by_payment_token(self, user_id: str, payment_token: str) -> PaymentCard | None:
        M = PaymentCardModel
        model = self.session.scalars(
            select(M).where(M.user_id == user_id, M.payment_token == payment_token)
        ).first()
        return self._to_domain_entity(model) if model else None

    def get_or_create(self, card: PaymentCard) -> tuple[PaymentCard, bool]:
        """
        Insert ``card`` unless a card with the same identity exists.

        Handles the race where two requests insert the same identity: the
        loser's IntegrityError is rolled back and the winner's row returned.
        Because of that rollback this must be the first write in the unit of
        work.

        Returns:
            (card, created)
        """
        existing = self.find_by_identity(card.identity)
        if existing:
            logger.info("card_already_stored", card_id=existing.card_id, user_id=card.user_id)
            return existing, False

        try:
            self.add(card)
            return card, True
        except IntegrityError:
            self.session.rollback()
            existing = self.find_by_identity(card.identity)
            if existing is None:
                raise
            logger.info("card_insert_race_resolved", card_id=existing.card_id)
            return existing, False

    def clear_default(self, user_id: str, keep_card_id: str | None = None) -> int:
        """Unset is_default on every card of the user except ``keep_card_id``."""
        M = PaymentCardModel
        stmt = update(M).where(M.user_id == user_id, M.is_default.is_(True))
        if keep_card_id is not None:
            stmt = stmt.where(M.card_id != keep_card_id)
        result = self.session.execute(
            stmt.values(is_default=False, updated_at=utcnow()).execution_options(
                synchronize_session=False
            )
        )
        return result.rowcount

    def mark_default(self, user_id: str, card_id: str) -> bool:
        M = PaymentCardModel
        return _conditional_update(
            self.session,
            update(M)
            .where(M.card_id == card_id, M.user_id == user_id)
            .values(is_default=True, updated_at=utcnow()),
        )

    def list_for_user(self, user_id: str) -> list[PaymentCard]:
        M = PaymentCardModel
        models = self.session.scalars(
            select(M).where(M.user_id == user_id).order_by(M.created_at.desc(), M.card_id)
        ).all()
        return [self._to_domain_entity(model) for model in models]

    @staticmethod
    def _to_domain_entity(model: PaymentCardModel) -> PaymentCard:
        return PaymentCard(
            card_id=model.card_id,
            user_id=model.user_id,
            provider=model.provider,
            payment_token=model.payment_token,
            card_last_four=model.card_last_four,
            card_brand=model.card_brand,
            card_type=model.card_type,
            card_holder_name=model.card_holder_name,
            alias=model.alias,
            expiration_month=model.expiration_month,
            expiration_year=model.expiration_year,
            is_default=model.is_default,
            authorization_code=model.authorization_code,
            token_expires_at=as_utc(model.token_expires_at),
            requires_cvv_for_payments=model.requires_cvv_for_payments,
            customer_reference=model.customer_reference,
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
        )


class PaymentRepository:
    """Repository for payments."""

    def __init__(self, session: Session):
        self.session = session

    def add(self, payment: Payment) -> None:
        self.session.add(
            PaymentModel(
                payment_id=payment.payment_id,
                user_id=payment.user_id,
                professional_id=payment.professional_id,
                service_request_id=payment.service_request_id,
                amount=payment.amount,
                currency=payment.currency,
                provider=payment.provider,
                description=payment.description,
                card_id=payment.card_id,
                status=payment.status.value,
                transaction_id=payment.transaction_id,
                provider_payment_id=payment.provider_payment_id,
                error_message=payment.error_message,
                refund_metadata=payment.refund_metadata,
                payment_metadata=payment.metadata or None,
                created_at=payment.created_at,
                updated_at=payment.updated_at,
                refunded_at=payment.refunded_at,
            )
        )
        self.session.flush()

    def get(self, payment_id: str) -> Payment | None:
        model = self.session.get(PaymentModel, payment_id)
        return self._to_domain_entity(model) if model else None

    def get_by_transaction(self, provider: str, transaction_id: str) -> Payment | None:
        M = PaymentModel
        model = self.session.scalars(
            select(M).where(M.provider == provider, M.transaction_id == transaction_id)
        ).first()
        return self._to_domain_entity(model) if model else None

    def update_status(
        self,
        payment_id: str,
        status: PaymentStatus,
        *,
        expected_status: PaymentStatus,
        **fields: Any,
    ) -> bool:
        """
        Move a payment to ``status`` if it is still in ``expected_status``.

        Extra keyword arguments are written alongside (card_id, transaction_id,
        provider_payment_id, error_message, refunded_at, refund_metadata).
        """
        M = PaymentModel
        return _conditional_update(
            self.session,
            update(M)
            .where(M.payment_id == payment_id, M.status == expected_status.value)
            .values(status=status.value, updated_at=utcnow(), **fields),
        )

    def claim_refund(self, payment_id: str, now: datetime, lease: timedelta) -> bool:
        """
        Take the refund lease on a completed payment.

        Only one caller holds the lease at a time; a lease left by a crashed
        attempt is reclaimable once it runs out.
        """
        M = PaymentModel
        return _conditional_update(
            self.session,
            update(M)
            .where(
                M.payment_id == payment_id,
                M.status == PaymentStatus.COMPLETED.value,
                or_(M.refund_claimed_until.is_(None), M.refund_claimed_until <= now),
            )
            .values(refund_claimed_until=now + lease, updated_at=utcnow()),
        )

    def release_refund_claim(self, payment_id: str) -> bool:
        M = PaymentModel
        return _conditional_update(
            self.session,
            update(M)
            .where(M.payment_id == payment_id, M.refund_claimed_until.is_not(None))
            .values(refund_claimed_until=None),
        )

    @staticmethod
    def _to_domain_entity(model: PaymentModel) -> Payment:
        return Payment(
            payment_id=model.payment_id,
            user_id=model.user_id,
            professional_id=model.professional_id,
            service_request_id=model.service_request_id,
            amount=model.amount,
            currency=model.currency,
            provider=model.provider,
            description=model.description,
            status=PaymentStatus(model.status),
            card_id=model.card_id,
            transaction_id=model.transaction_id,
            provider_payment_id=model.provider_payment_id,
            error_message=model.error_message,
            refund_metadata=model.refund_metadata,
            metadata=dict(model.payment_metadata or {}),
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
            refunded_at=as_utc(model.refunded_at),
        )


class WebhookEventRepository:
    """Idempotency records for inbound webhook events."""

    def __init__(self, session: Session):
        self.session = session

    def record(self, provider: str, event_id: str, event_type: str | None = None) -> bool:
        """
        Record an event as accepted.

        Returns:
            False if the event was already recorded (duplicate delivery)
        """
        if self.session.get(WebhookEventModel, (provider, event_id)) is not None:
            return False
        try:
            self.session.add(
                WebhookEventModel(
                    provider=provider,
                    event_id=event_id,
                    event_type=event_type,
                    received_at=utcnow(),
                )
            )
            self.session.flush()
        except IntegrityError:
            self.session.rollback()
            return False
        return True

    def forget(self, provider: str, event_id: str) -> None:
        model = self.session.get(WebhookEventModel, (provider, event_id))
        if model is not None:
            self.session.delete(model)
            self.session.flush()
