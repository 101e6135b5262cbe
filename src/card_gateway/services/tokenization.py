"""
Tokenization orchestrator.

Turns card data into stored provider tokens for all three provider shapes and
owns the tokenization session state machine:

    pending -> completed | failed
    failed  -> completed | failed   (retry)
    completed is terminal

Session completion is guarded by a compare-and-swap claim on the session's
``version`` that is committed before the provider is called. The claim holds
a lease (``claimed_until``) until the attempt is recorded, so two concurrent
completions of one session never both reach the provider.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.orm import Session, sessionmaker

from card_gateway.domain.card import PaymentCard
from card_gateway.domain.card_utils import (
    detect_card_brand,
    is_valid_card_number,
    is_valid_expiration,
    normalize_card_number,
)
from card_gateway.domain.exceptions import (
    Forbidden,
    GatewayError,
    MethodNotSupported,
    NotFound,
    SessionAlreadyCompleted,
    SessionCompletionInProgress,
    SessionExpired,
    ValidationError,
)
from card_gateway.domain.session import (
    COMPLETION_CLAIM_TTL,
    DEFAULT_SESSION_TTL,
    SessionStatus,
    TokenizationSession,
)
from card_gateway.domain.timeutils import utcnow
from card_gateway.infrastructure.database import session_scope
from card_gateway.infrastructure.repository import CardRepository, SessionRepository
from card_gateway.providers.base import (
    DirectTokenizationInput,
    ProviderShape,
    SessionInput,
)
from card_gateway.providers.registry import ProviderRegistry
from card_gateway.services.recovery import best_effort

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class DirectTokenizationRequest:
    user_id: str
    provider: str
    card_number: str | None = field(default=None, repr=False)
    card_exp_month: int | None = None
    card_exp_year: int | None = None
    card_cvv: str | None = field(default=None, repr=False)
    card_holder_name: str | None = None
    card_token: str | None = field(default=None, repr=False)
    set_as_default: bool = False
    alias: str | None = None
    email: str | None = None


@dataclass(frozen=True)
class SessionRequest:
    user_id: str
    provider: str
    return_url: str
    finish_redirect_url: str | None = None
    alias: str | None = None
    set_as_default: bool = False
    email: str | None = None


class TokenizationOrchestrator:
    """Coordinates providers, the card store and tokenization sessions."""

    def __init__(
        self,
        registry: ProviderRegistry,
        session_factory: sessionmaker,
        session_ttl: timedelta = DEFAULT_SESSION_TTL,
        claim_ttl: timedelta = COMPLETION_CLAIM_TTL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.registry = registry
        self.session_factory = session_factory
        self.session_ttl = session_ttl
        self.claim_ttl = claim_ttl
        self.clock = clock

    async def tokenize_direct(
        self,
        request: DirectTokenizationRequest,
        metadata: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Tokenize a card in one provider call (direct and vault shapes).

        Persists the card and an already-completed direct session in the same
        transaction.

        Returns:
            Public card view: token_id, card_last_four, card_brand, provider, is_default

        Raises:
            ProviderNotConfigured: Provider unknown or disabled
            MethodNotSupported: Provider is redirect-shaped
            ValidationError: Card data missing or invalid
            ProviderError / ProviderTimeout: Provider failure
        """
        provider = self.registry.resolve(request.provider)
        if provider.shape == ProviderShape.REDIRECT:
            raise MethodNotSupported(
                f"{provider.name.value} requires session-based tokenization",
                details={"provider": provider.name.value},
            )

        self._validate_direct_request(request, provider.shape)

        log = logger.bind(user_id=request.user_id, provider=provider.name.value)
        log.info("direct_tokenization_starting")

        tokenized = await provider.tokenize_direct(
            DirectTokenizationInput(
                user_id=request.user_id,
                card_number=normalize_card_number(request.card_number) if request.card_number else None,
                card_exp_month=request.card_exp_month,
                card_exp_year=request.card_exp_year,
                card_cvv=request.card_cvv,
                card_holder_name=request.card_holder_name,
                card_token=request.card_token,
                email=request.email,
                metadata=dict(metadata or {}),
            )
        )

        card = PaymentCard.from_tokenized(
            tokenized,
            user_id=request.user_id,
            provider=provider.name.value,
            is_default=request.set_as_default,
            alias=request.alias,
            card_holder_name=request.card_holder_name,
        )

        with session_scope(self.session_factory) as db:
            stored, created = self._store_card(db, card)
            SessionRepository(db).add(
                TokenizationSession.completed_direct(
                    user_id=request.user_id,
                    provider=provider.name.value,
                    token_id=stored.card_id,
                    now=self.clock(),
                    set_as_default=request.set_as_default,
                    alias=request.alias,
                    customer_reference=stored.customer_reference,
                    metadata=dict(metadata or {}),
                )
            )

        log.info(
            "direct_tokenization_completed",
            card_id=stored.card_id,
            created=created,
            card_brand=stored.card_brand,
        )
        return stored.public_view()

    async def create_session(
        self,
        request: SessionRequest,
        metadata: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Start a redirect tokenization.

        Returns:
            session_id, redirect_url, token, template (callback contract), expires_at

        Raises:
            MethodNotSupported: Provider is not redirect-shaped
            ValidationError: return_url missing
        """
        provider = self.registry.resolve(request.provider)
        if provider.shape != ProviderShape.REDIRECT:
            raise MethodNotSupported(
                f"{provider.name.value} does not use session-based tokenization",
                details={"provider": provider.name.value},
            )
        if not request.return_url:
            raise ValidationError("return_url is required", details={"missing_fields": ["return_url"]})

        handle = await provider.create_session(
            SessionInput(
                user_id=request.user_id,
                return_url=request.return_url,
                email=request.email,
                metadata=dict(metadata or {}),
            )
        )

        session = TokenizationSession.start_redirect(
            session_id=f"{provider.session_prefix}{handle.provider_token}",
            user_id=request.user_id,
            provider=provider.name.value,
            provider_token=handle.provider_token,
            ttl=self.session_ttl,
            now=self.clock(),
            set_as_default=request.set_as_default,
            return_url=request.return_url,
            finish_redirect_url=request.finish_redirect_url,
            alias=request.alias,
            customer_reference=handle.customer_reference,
            metadata={**dict(metadata or {}), **handle.provider_metadata},
        )

        with session_scope(self.session_factory) as db:
            SessionRepository(db).add(session)

        logger.info(
            "tokenization_session_created",
            session_id=session.session_id,
            user_id=request.user_id,
            provider=provider.name.value,
            expires_at=session.expires_at.isoformat(),
        )

        template = provider.callback_template
        return {
            "session_id": session.session_id,
            "redirect_url": handle.redirect_url,
            "token": handle.provider_token,
            "template": template.to_dict() if template else None,
            "expires_at": session.expires_at.isoformat(),
        }

    async def complete_from_callback(
        self, provider_name: str, callback_data: Mapping[str, Any]
    ) -> dict[str, Any]:
        """Complete the session identified by a provider's callback parameters."""
        provider = self.registry.resolve(provider_name)
        session_id = provider.resolve_session_id(callback_data)
        if not session_id:
            raise ValidationError(
                "Callback does not identify a tokenization session",
                details={"provider": provider.name.value},
            )
        return await self.complete_session(
            session_id, callback_data, provider_name=provider.name.value
        )

    async def complete_session(
        self,
        session_id: str,
        callback_data: Mapping[str, Any],
        user_id: str | None = None,
        provider_name: str | None = None,
    ) -> dict[str, Any]:
        """
        Complete a pending (or previously failed) redirect session.

        Returns:
            Public card view plus session_id and finish_redirect_url

        Raises:
            NotFound: No such session
            Forbidden: user_id given and not the session owner
            SessionAlreadyCompleted: Session is terminal; provider not called
            SessionExpired: Past expires_at; provider not called
            SessionCompletionInProgress: A concurrent completion holds the claim
            InscriptionCancelled / ProviderError / ProviderTimeout: from the provider
        """
        now = self.clock()

        with session_scope(self.session_factory) as db:
            session = SessionRepository(db).get(session_id)

        if session is None:
            raise NotFound("Session not found", details={"session_id": session_id})
        if user_id is not None and session.user_id != user_id:
            raise Forbidden("Session belongs to another user")
        if provider_name is not None and session.provider != provider_name:
            raise ValidationError(
                "Session was created for another provider",
                details={"session_id": session_id, "provider": provider_name},
            )

        log = logger.bind(session_id=session_id, user_id=session.user_id, provider=session.provider)

        try:
            session.ensure_completable(now)
        except SessionExpired as e:
            log.info("tokenization_session_expired")
            self._record_failure(session_id, e)
            raise

        if session.status == SessionStatus.FAILED:
            log.info("tokenization_session_retry", previous_error=session.error_code)

        claimed_version = self._claim(session, now)
        provider = self.registry.resolve(session.provider)

        try:
            tokenized = await provider.complete_session(session, callback_data)

            card = PaymentCard.from_tokenized(
                tokenized,
                user_id=session.user_id,
                provider=session.provider,
                is_default=session.set_as_default,
                alias=session.alias,
            )

            with session_scope(self.session_factory) as db:
                stored, created = self._store_card(db, card)
                if not SessionRepository(db).mark_completed(
                    session_id, claimed_version, stored.card_id, self.clock()
                ):
                    raise SessionAlreadyCompleted(
                        "Session already completed", details={"session_id": session_id}
                    )
        except SessionAlreadyCompleted:
            raise
        except Exception as e:
            log.warning(
                "tokenization_session_failed",
                error_type=type(e).__name__,
                error_code=getattr(e, "code", None),
            )
            self._record_failure(session_id, e, version=claimed_version)
            raise

        log.info("tokenization_session_completed", card_id=stored.card_id, created=created)

        return {
            **stored.public_view(),
            "session_id": session_id,
            "finish_redirect_url": session.finish_redirect_url,
        }

    def get_session(self, session_id: str, user_id: str) -> dict[str, Any]:
        with session_scope(self.session_factory) as db:
            session = SessionRepository(db).get(session_id)
        if session is None:
            raise NotFound("Session not found", details={"session_id": session_id})
        if session.user_id != user_id:
            raise Forbidden("Session belongs to another user")
        return session.to_status_view()

    def list_cards(self, user_id: str) -> list[dict[str, Any]]:
        with session_scope(self.session_factory) as db:
            cards = CardRepository(db).list_for_user(user_id)
        return [card.detailed_view() for card in cards]

    def set_default_card(self, user_id: str, card_id: str) -> dict[str, Any]:
        """Make ``card_id`` the user's only default card in one transaction."""
        with session_scope(self.session_factory) as db:
            cards = CardRepository(db)
            card = cards.get(card_id)
            if card is None:
                raise NotFound("Card not found", details={"card_id": card_id})
            if card.user_id != user_id:
                raise Forbidden("Card belongs to another user")
            cards.clear_default(user_id, keep_card_id=card_id)
            cards.mark_default(user_id, card_id)

        logger.info("default_card_changed", user_id=user_id, card_id=card_id)
        return replace(card, is_default=True).public_view()

    def _claim(self, session: TokenizationSession, now: datetime) -> int:
        """Take the completion claim; returns the version the claim holds."""
        with session_scope(self.session_factory) as db:
            repo = SessionRepository(db)
            if repo.claim_for_completion(session.session_id, session.version, now, self.claim_ttl):
                return session.version + 1
            current = repo.get(session.session_id)

        if current is not None and current.status == SessionStatus.COMPLETED:
            raise SessionAlreadyCompleted(
                "Session already completed",
                details={"session_id": session.session_id, "token_id": current.token_id},
            )
        logger.warning("tokenization_session_claim_lost", session_id=session.session_id)
        raise SessionCompletionInProgress(
            "Session completion already in progress",
            details={"session_id": session.session_id},
        )

    @staticmethod
    def _store_card(db: Session, card: PaymentCard) -> tuple[PaymentCard, bool]:
        cards = CardRepository(db)
        stored, created = cards.get_or_create(card)
        if created and stored.is_default:
            cleared = cards.clear_default(stored.user_id, keep_card_id=stored.card_id)
            logger.debug("default_cards_cleared", user_id=stored.user_id, cleared=cleared)
        return stored, created

    def _record_failure(self, session_id: str, error: BaseException, version: int | None = None) -> None:
        error_code = error.code if isinstance(error, GatewayError) else "UNKNOWN_ERROR"
        error_message = str(error) or type(error).__name__

        def write() -> None:
            with session_scope(self.session_factory) as db:
                SessionRepository(db).mark_failed(session_id, error_code, error_message, version)

        best_effort(
            "tokenization_session_failure_not_recorded",
            write,
            session_id=session_id,
            error_code=error_code,
        )

    def _validate_direct_request(
        self, request: DirectTokenizationRequest, shape: ProviderShape
    ) -> None:
        if not request.user_id:
            raise ValidationError("user_id is required", details={"missing_fields": ["user_id"]})

        if shape == ProviderShape.VAULT:
            if not request.card_token:
                raise ValidationError(
                    "card_token is required for this provider",
                    details={"missing_fields": ["card_token"]},
                )
            return

        required = {
            "card_number": request.card_number,
            "card_exp_month": request.card_exp_month,
            "card_exp_year": request.card_exp_year,
            "card_cvv": request.card_cvv,
            "card_holder_name": request.card_holder_name,
        }
        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ValidationError(
                f"Missing required fields: {', '.join(missing)}",
                details={"missing_fields": missing},
            )

        if not is_valid_card_number(request.card_number):
            raise ValidationError("Invalid card number")
        if not is_valid_expiration(request.card_exp_month, request.card_exp_year, self.clock()):
            raise ValidationError("Card is expired or the expiration date is invalid")
        if not request.card_cvv.isdigit() or len(request.card_cvv) not in (3, 4):
            raise ValidationError("card_cvv must be 3 or 4 digits")

        logger.debug(
            "direct_tokenization_validated",
            user_id=request.user_id,
            detected_brand=detect_card_brand(request.card_number),
        )
