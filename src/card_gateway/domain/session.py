"""Tokenization session entity and its state machine.

A session tracks one attempt to turn card data into a stored provider token.
Direct tokenizations create a session that is already ``completed``; redirect
tokenizations create a ``pending`` session that is completed (or failed) by
the provider callback.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from card_gateway.domain.exceptions import (
    SessionAlreadyCompleted,
    SessionCompletionInProgress,
    SessionExpired,
)
from card_gateway.domain.timeutils import as_utc, utcnow


class SessionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class SessionType(str, Enum):
    DIRECT = "direct"
    REDIRECT = "redirect"


# failed -> failed covers a retried completion that fails again
ALLOWED_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED}),
    SessionStatus.FAILED: frozenset({SessionStatus.COMPLETED, SessionStatus.FAILED}),
    SessionStatus.COMPLETED: frozenset(),
}

DEFAULT_SESSION_TTL = timedelta(minutes=30)
COMPLETION_CLAIM_TTL = timedelta(minutes=2)


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def generate_session_id() -> str:
    return f"tok_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class TokenizationSession:
    """Tokenization session domain entity.

    Attributes:
        session_id: Session identifier (``tbk_<token>`` for Transbank)
        user_id: Owner of the session
        provider: Provider name
        status: pending, completed or failed
        type: direct or redirect
        token_id: Card id, set iff status is completed
        provider_token: Opaque handle issued by the provider for this session
        customer_reference: Provider-side customer/username bound at creation
        expires_at: Completion deadline (None for direct sessions)
        version: Optimistic concurrency counter, bumped on every claim
        claimed_until: Lease of an in-flight completion attempt
    """

    session_id: str
    user_id: str
    provider: str
    status: SessionStatus
    type: SessionType
    created_at: datetime = field(default_factory=utcnow)
    token_id: str | None = None
    set_as_default: bool = False
    return_url: str | None = None
    finish_redirect_url: str | None = None
    alias: str | None = None
    provider_token: str | None = None
    customer_reference: str | None = None
    expires_at: datetime | None = None
    completed_at: datetime | None = None
    last_attempt_at: datetime | None = None
    claimed_until: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error_code: str | None = None
    error_message: str | None = None
    version: int = 0

    def __post_init__(self) -> None:
        if not self.session_id:
            raise ValueError("session_id cannot be empty")
        if not self.user_id:
            raise ValueError("user_id cannot be empty")
        if (self.status == SessionStatus.COMPLETED) != bool(self.token_id):
            raise ValueError("token_id must be set if and only if the session is completed")

    @classmethod
    def start_redirect(
        cls,
        session_id: str,
        user_id: str,
        provider: str,
        *,
        provider_token: str,
        ttl: timedelta = DEFAULT_SESSION_TTL,
        now: datetime | None = None,
        **attributes: Any,
    ) -> "TokenizationSession":
        now = now or utcnow()
        return cls(
            session_id=session_id,
            user_id=user_id,
            provider=provider,
            status=SessionStatus.PENDING,
            type=SessionType.REDIRECT,
            created_at=now,
            expires_at=now + ttl,
            provider_token=provider_token,
            **attributes,
        )

    @classmethod
    def completed_direct(
        cls,
        user_id: str,
        provider: str,
        token_id: str,
        *,
        now: datetime | None = None,
        **attributes: Any,
    ) -> "TokenizationSession":
        now = now or utcnow()
        return cls(
            session_id=generate_session_id(),
            user_id=user_id,
            provider=provider,
            status=SessionStatus.COMPLETED,
            type=SessionType.DIRECT,
            created_at=now,
            completed_at=now,
            token_id=token_id,
            **attributes,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) > as_utc(self.expires_at)

    def is_claimed(self, now: datetime | None = None) -> bool:
        if self.claimed_until is None:
            return False
        return (now or utcnow()) < as_utc(self.claimed_until)

    def ensure_completable(self, now: datetime | None = None) -> None:
        """Raise unless a completion attempt may start.

        Raises:
            SessionAlreadyCompleted: Session is terminal
            SessionCompletionInProgress: Another attempt holds an unexpired claim
            SessionExpired: Session passed expires_at
        """
        if self.status == SessionStatus.COMPLETED:
            raise SessionAlreadyCompleted(
                "Session already completed",
                details={"session_id": self.session_id, "token_id": self.token_id},
            )
        if self.is_claimed(now):
            raise SessionCompletionInProgress(
                "Session completion already in progress",
                details={"session_id": self.session_id},
            )
        if self.is_expired(now):
            raise SessionExpired(
                "Session has expired",
                details={
                    "session_id": self.session_id,
                    "expires_at": as_utc(self.expires_at).isoformat(),
                },
            )

    def complete(self, token_id: str, now: datetime | None = None) -> "TokenizationSession":
        self._check_transition(SessionStatus.COMPLETED)
        return replace(
            self,
            status=SessionStatus.COMPLETED,
            token_id=token_id,
            completed_at=now or utcnow(),
            error_code=None,
            error_message=None,
        )

    def fail(self, error_code: str, error_message: str) -> "TokenizationSession":
        self._check_transition(SessionStatus.FAILED)
        return replace(
            self,
            status=SessionStatus.FAILED,
            error_code=error_code,
            error_message=error_message,
        )

    def _check_transition(self, target: SessionStatus) -> None:
        if not can_transition(self.status, target):
            if self.status == SessionStatus.COMPLETED:
                raise SessionAlreadyCompleted(
                    "Session already completed", details={"session_id": self.session_id}
                )
            raise ValueError(f"Cannot move session from {self.status.value} to {target.value}")

    def to_status_view(self) -> dict[str, Any]:
        view: dict[str, Any] = {
            "session_id": self.session_id,
            "provider": self.provider,
            "status": self.status.value,
            "type": self.type.value,
            "token_id": self.token_id,
            "created_at": as_utc(self.created_at).isoformat(),
            "expires_at": as_utc(self.expires_at).isoformat() if self.expires_at else None,
            "completed_at": as_utc(self.completed_at).isoformat() if self.completed_at else None,
        }
        if self.status == SessionStatus.FAILED:
            view["error"] = {"code": self.error_code, "message": self.error_message}
        return view
