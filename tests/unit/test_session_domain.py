"""Unit tests for the tokenization session state machine."""

import random
from datetime import datetime, timedelta, timezone

import pytest

from card_gateway.domain.exceptions import (
    SessionAlreadyCompleted,
    SessionCompletionInProgress,
    SessionExpired,
)
from card_gateway.domain.session import (
    DEFAULT_SESSION_TTL,
    SessionStatus,
    SessionType,
    TokenizationSession,
    can_transition,
    generate_session_id,
)

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def pending_session(**overrides) -> TokenizationSession:
    attributes = {
        "session_id": "tbk_T0001",
        "user_id": "user_1",
        "provider": "transbank",
        "provider_token": "T0001",
        "now": NOW,
    }
    attributes.update(overrides)
    return TokenizationSession.start_redirect(**attributes)


class TestSessionCreation:
    def test_start_redirect_sets_pending_and_expiry(self):
        session = pending_session()

        assert session.status == SessionStatus.PENDING
        assert session.type == SessionType.REDIRECT
        assert session.token_id is None
        assert session.expires_at == NOW + DEFAULT_SESSION_TTL
        assert session.version == 0

    def test_completed_direct_has_token_and_no_expiry(self):
        session = TokenizationSession.completed_direct("user_1", "stripe", "card_1", now=NOW)

        assert session.status == SessionStatus.COMPLETED
        assert session.type == SessionType.DIRECT
        assert session.token_id == "card_1"
        assert session.completed_at == NOW
        assert session.expires_at is None
        assert session.session_id.startswith("tok_")

    def test_completed_session_requires_token(self):
        with pytest.raises(ValueError, match="token_id"):
            TokenizationSession(
                session_id="tok_1",
                user_id="user_1",
                provider="stripe",
                status=SessionStatus.COMPLETED,
                type=SessionType.DIRECT,
            )

    def test_pending_session_cannot_carry_token(self):
        with pytest.raises(ValueError, match="token_id"):
            TokenizationSession(
                session_id="tok_1",
                user_id="user_1",
                provider="stripe",
                status=SessionStatus.PENDING,
                type=SessionType.REDIRECT,
                token_id="card_1",
            )

    def test_empty_ids_rejected(self):
        with pytest.raises(ValueError):
            pending_session(session_id="")
        with pytest.raises(ValueError):
            pending_session(user_id="")

    def test_generated_session_ids_are_unique(self):
        ids = {generate_session_id() for _ in range(100)}
        assert len(ids) == 100


class TestTransitions:
    def test_allowed_transitions(self):
        assert can_transition(SessionStatus.PENDING, SessionStatus.COMPLETED)
        assert can_transition(SessionStatus.PENDING, SessionStatus.FAILED)
        assert can_transition(SessionStatus.FAILED, SessionStatus.COMPLETED)
        assert can_transition(SessionStatus.FAILED, SessionStatus.FAILED)

    def test_completed_is_terminal(self):
        for target in SessionStatus:
            assert not can_transition(SessionStatus.COMPLETED, target)

    def test_complete_sets_token_and_clears_error(self):
        failed = pending_session().fail("PROVIDER_ERROR", "boom")

        completed = failed.complete("card_1", now=NOW)

        assert completed.status == SessionStatus.COMPLETED
        assert completed.token_id == "card_1"
        assert completed.error_code is None
        assert completed.error_message is None

    def test_completing_twice_raises_already_completed(self):
        completed = pending_session().complete("card_1", now=NOW)

        with pytest.raises(SessionAlreadyCompleted):
            completed.complete("card_2", now=NOW)
        with pytest.raises(SessionAlreadyCompleted):
            completed.fail("PROVIDER_ERROR", "late failure")

    def test_random_walks_keep_token_iff_completed(self):
        """Any sequence of complete/fail calls keeps token_id set iff completed."""
        rng = random.Random(1234)

        for _ in range(200):
            session = pending_session()
            for step in range(rng.randint(1, 8)):
                try:
                    if rng.random() < 0.4:
                        session = session.complete(f"card_{step}", now=NOW)
                    else:
                        session = session.fail("PROVIDER_ERROR", f"attempt {step}")
                except SessionAlreadyCompleted:
                    assert session.status == SessionStatus.COMPLETED

                assert (session.status == SessionStatus.COMPLETED) == bool(session.token_id)


class TestCompletability:
    def test_pending_before_expiry_is_completable(self):
        pending_session().ensure_completable(NOW + timedelta(minutes=29))

    def test_failed_session_is_completable(self):
        pending_session().fail("X", "y").ensure_completable(NOW)

    def test_expired_session_raises(self):
        with pytest.raises(SessionExpired):
            pending_session().ensure_completable(NOW + DEFAULT_SESSION_TTL + timedelta(seconds=1))

    def test_completed_check_wins_over_expiry(self):
        completed = pending_session().complete("card_1", now=NOW)

        with pytest.raises(SessionAlreadyCompleted):
            completed.ensure_completable(NOW + timedelta(days=1))

    def test_live_claim_raises_in_progress(self):
        claimed = pending_session(claimed_until=NOW + timedelta(minutes=2))

        with pytest.raises(SessionCompletionInProgress):
            claimed.ensure_completable(NOW + timedelta(minutes=1))
        claimed.ensure_completable(NOW + timedelta(minutes=3))

    def test_naive_expiry_is_read_as_utc(self):
        session = pending_session(ttl=timedelta(minutes=5))
        naive = TokenizationSession(
            **{**session.__dict__, "expires_at": session.expires_at.replace(tzinfo=None)}
        )

        assert not naive.is_expired(NOW + timedelta(minutes=4))
        assert naive.is_expired(NOW + timedelta(minutes=6))


class TestStatusView:
    def test_failed_view_includes_error(self):
        view = pending_session().fail("INSCRIPTION_CANCELLED", "cancelled").to_status_view()

        assert view["status"] == "failed"
        assert view["error"] == {"code": "INSCRIPTION_CANCELLED", "message": "cancelled"}
        assert view["token_id"] is None

    def test_completed_view(self):
        view = pending_session().complete("card_1", now=NOW).to_status_view()

        assert view["status"] == "completed"
        assert view["token_id"] == "card_1"
        assert view["completed_at"] == NOW.isoformat()
        assert "error" not in view
