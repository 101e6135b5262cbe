"""Unit tests for the tokenization orchestrator with fake providers."""

import asyncio

import pytest

from card_gateway.domain.card import TokenizedCard
from card_gateway.domain.exceptions import (
    Forbidden,
    InscriptionCancelled,
    MethodNotSupported,
    NotFound,
    ProviderError,
    ProviderNotConfigured,
    SessionAlreadyCompleted,
    SessionCompletionInProgress,
    SessionExpired,
    ValidationError,
)
from card_gateway.domain.session import SessionStatus, SessionType
from card_gateway.infrastructure.database import session_scope
from card_gateway.infrastructure.repository import SessionRepository
from card_gateway.services.tokenization import DirectTokenizationRequest, SessionRequest


def card_request(**overrides) -> DirectTokenizationRequest:
    attributes = {
        "user_id": "user_1",
        "provider": "stripe",
        "card_number": "4242 4242 4242 4242",
        "card_exp_month": 12,
        "card_exp_year": 2030,
        "card_cvv": "123",
        "card_holder_name": "Test Customer",
    }
    attributes.update(overrides)
    return DirectTokenizationRequest(**attributes)


def session_request(**overrides) -> SessionRequest:
    attributes = {
        "user_id": "user_1",
        "provider": "transbank",
        "return_url": "https://app.example/tokenize/complete/transbank",
        "finish_redirect_url": "https://app.example/cards",
    }
    attributes.update(overrides)
    return SessionRequest(**attributes)


def load_session(session_factory, session_id):
    with session_scope(session_factory) as db:
        return SessionRepository(db).get(session_id)


class TestDirectTokenization:
    @pytest.mark.asyncio
    async def test_stores_card_and_completed_session(self, tokenization, direct_provider, session_factory):
        result = await tokenization.tokenize_direct(card_request(set_as_default=True), metadata={"client_ip": "10.0.0.1"})

        assert result["token_id"].startswith("card_")
        assert result["card_last_four"] == "4242"
        assert result["card_brand"] == "visa"
        assert result["provider"] == "stripe"
        assert result["is_default"] is True

        sent = direct_provider.calls["tokenize_direct"][0][0]
        assert sent.card_number == "4242424242424242"
        assert sent.metadata == {"client_ip": "10.0.0.1"}

        cards = tokenization.list_cards("user_1")
        assert [card["token_id"] for card in cards] == [result["token_id"]]

    @pytest.mark.asyncio
    async def test_vault_provider_takes_card_token(self, tokenization, vault_provider):
        result = await tokenization.tokenize_direct(
            card_request(provider="mercadopago", card_number=None, card_cvv=None, card_token="mp-front-token")
        )

        assert result["card_last_four"] == "1111"
        assert result["provider"] == "mercadopago"
        assert vault_provider.calls["tokenize_direct"][0][0].card_token == "mp-front-token"
        assert tokenization.list_cards("user_1")[0]["requires_cvv_for_payments"] is True

    @pytest.mark.asyncio
    async def test_vault_provider_requires_card_token(self, tokenization, vault_provider):
        with pytest.raises(ValidationError):
            await tokenization.tokenize_direct(card_request(provider="mercadopago"))

        assert vault_provider.call_count("tokenize_direct") == 0

    @pytest.mark.asyncio
    async def test_redirect_provider_is_not_supported(self, tokenization):
        with pytest.raises(MethodNotSupported) as exc_info:
            await tokenization.tokenize_direct(card_request(provider="transbank"))

        assert exc_info.value.code == "METHOD_NOT_SUPPORTED"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, tokenization):
        with pytest.raises(ProviderNotConfigured):
            await tokenization.tokenize_direct(card_request(provider="paypal"))

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "overrides",
        [
            {"card_number": "4242424242424241"},
            {"card_exp_month": 1, "card_exp_year": 2020},
            {"card_exp_month": 13},
            {"card_cvv": "12"},
            {"card_cvv": "12a"},
            {"card_holder_name": None},
        ],
    )
    async def test_invalid_card_data_never_reaches_provider(self, tokenization, direct_provider, overrides):
        with pytest.raises(ValidationError):
            await tokenization.tokenize_direct(card_request(**overrides))

        assert direct_provider.call_count("tokenize_direct") == 0

    @pytest.mark.asyncio
    async def test_same_card_is_stored_once(self, tokenization):
        first = await tokenization.tokenize_direct(card_request())
        second = await tokenization.tokenize_direct(card_request())

        assert second["token_id"] == first["token_id"]
        assert len(tokenization.list_cards("user_1")) == 1

    @pytest.mark.asyncio
    async def test_new_default_clears_previous_default(self, tokenization, direct_provider):
        first = await tokenization.tokenize_direct(card_request(set_as_default=True))
        direct_provider.tokenized = TokenizedCard(
            payment_token="stripe_tok_2", card_last_four="4444", card_brand="mastercard"
        )
        second = await tokenization.tokenize_direct(
            card_request(card_number="5555555555554444", set_as_default=True)
        )

        defaults = {card["token_id"]: card["is_default"] for card in tokenization.list_cards("user_1")}
        assert defaults == {first["token_id"]: False, second["token_id"]: True}

    @pytest.mark.asyncio
    async def test_provider_error_stores_nothing(self, tokenization, direct_provider):
        direct_provider.errors["tokenize_direct"] = ProviderError("declined", code="TOKENIZATION_FAILED", retryable=False)

        with pytest.raises(ProviderError):
            await tokenization.tokenize_direct(card_request())

        assert tokenization.list_cards("user_1") == []


class TestSessionCreation:
    @pytest.mark.asyncio
    async def test_returns_redirect_contract(self, tokenization, redirect_provider, session_factory):
        result = await tokenization.create_session(session_request(), metadata={"user_agent": "pytest"})

        assert result["session_id"] == "tbk_T0001"
        assert result["token"] == "T0001"
        assert result["redirect_url"] == "https://webpay.example/inscription"
        assert result["template"] == {"method": "POST", "include_in": "body", "parameter_name": "TBK_TOKEN"}
        assert result["expires_at"] == "2026-03-15T12:30:00+00:00"

        session = load_session(session_factory, "tbk_T0001")
        assert session.status == SessionStatus.PENDING
        assert session.type == SessionType.REDIRECT
        assert session.customer_reference == "user-user_1"
        assert session.metadata == {"user_agent": "pytest"}

    @pytest.mark.asyncio
    async def test_direct_provider_cannot_start_session(self, tokenization):
        with pytest.raises(MethodNotSupported):
            await tokenization.create_session(session_request(provider="stripe"))

    @pytest.mark.asyncio
    async def test_return_url_required(self, tokenization, redirect_provider):
        with pytest.raises(ValidationError):
            await tokenization.create_session(session_request(return_url=""))

        assert redirect_provider.call_count("create_session") == 0

    @pytest.mark.asyncio
    async def test_get_session_checks_owner(self, tokenization):
        await tokenization.create_session(session_request())

        view = tokenization.get_session("tbk_T0001", "user_1")

        assert view["status"] == "pending"
        with pytest.raises(Forbidden):
            tokenization.get_session("tbk_T0001", "user_2")
        with pytest.raises(NotFound):
            tokenization.get_session("tbk_missing", "user_1")


class TestSessionCompletion:
    @pytest.mark.asyncio
    async def test_callback_completes_session(self, tokenization, redirect_provider, session_factory):
        await tokenization.create_session(session_request(set_as_default=True, alias="Work card"))

        result = await tokenization.complete_from_callback("transbank", {"TBK_TOKEN": "T0001"})

        assert result["session_id"] == "tbk_T0001"
        assert result["finish_redirect_url"] == "https://app.example/cards"
        assert result["is_default"] is True

        session = load_session(session_factory, "tbk_T0001")
        assert session.status == SessionStatus.COMPLETED
        assert session.token_id == result["token_id"]
        assert session.claimed_until is None

        card = tokenization.list_cards("user_1")[0]
        assert card["alias"] == "Work card"

    @pytest.mark.asyncio
    async def test_callback_without_session_reference(self, tokenization):
        with pytest.raises(ValidationError):
            await tokenization.complete_from_callback("transbank", {})

    @pytest.mark.asyncio
    async def test_callback_for_other_provider(self, tokenization, redirect_provider):
        await tokenization.create_session(session_request())

        with pytest.raises(ValidationError):
            await tokenization.complete_from_callback("stripe", {"session_id": "tbk_T0001"})

        assert redirect_provider.call_count("complete_session") == 0

    @pytest.mark.asyncio
    async def test_unknown_session(self, tokenization):
        with pytest.raises(NotFound):
            await tokenization.complete_session("tbk_missing", {})

    @pytest.mark.asyncio
    async def test_wrong_owner(self, tokenization, redirect_provider):
        await tokenization.create_session(session_request())

        with pytest.raises(Forbidden):
            await tokenization.complete_session("tbk_T0001", {"TBK_TOKEN": "T0001"}, user_id="user_2")

        assert redirect_provider.call_count("complete_session") == 0

    @pytest.mark.asyncio
    async def test_completed_session_is_not_completed_again(self, tokenization, redirect_provider):
        await tokenization.create_session(session_request())
        await tokenization.complete_from_callback("transbank", {"TBK_TOKEN": "T0001"})

        with pytest.raises(SessionAlreadyCompleted) as exc_info:
            await tokenization.complete_from_callback("transbank", {"TBK_TOKEN": "T0001"})

        assert exc_info.value.code == "SESSION_ALREADY_COMPLETED"
        assert redirect_provider.call_count("complete_session") == 1

    @pytest.mark.asyncio
    async def test_expired_session_is_failed_without_provider_call(
        self, tokenization, redirect_provider, session_factory, clock
    ):
        await tokenization.create_session(session_request())
        clock.advance(minutes=31)

        with pytest.raises(SessionExpired):
            await tokenization.complete_from_callback("transbank", {"TBK_TOKEN": "T0001"})

        assert redirect_provider.call_count("complete_session") == 0
        session = load_session(session_factory, "tbk_T0001")
        assert session.status == SessionStatus.FAILED
        assert session.error_code == "SESSION_EXPIRED"

    @pytest.mark.asyncio
    async def test_failed_attempt_can_be_retried(self, tokenization, redirect_provider, session_factory):
        await tokenization.create_session(session_request())
        redirect_provider.errors["complete_session"] = ProviderError(
            "Transbank unavailable", code="TOKENIZATION_COMPLETION_FAILED"
        )

        with pytest.raises(ProviderError):
            await tokenization.complete_from_callback("transbank", {"TBK_TOKEN": "T0001"})

        failed = load_session(session_factory, "tbk_T0001")
        assert failed.status == SessionStatus.FAILED
        assert failed.error_code == "TOKENIZATION_COMPLETION_FAILED"
        assert failed.claimed_until is None

        del redirect_provider.errors["complete_session"]
        result = await tokenization.complete_from_callback("transbank", {"TBK_TOKEN": "T0001"})

        completed = load_session(session_factory, "tbk_T0001")
        assert completed.status == SessionStatus.COMPLETED
        assert completed.token_id == result["token_id"]
        assert completed.error_code is None

    @pytest.mark.asyncio
    async def test_unrecorded_failure_keeps_provider_error(
        self, tokenization, redirect_provider, session_factory, monkeypatch
    ):
        await tokenization.create_session(session_request())
        redirect_provider.errors["complete_session"] = ProviderError(
            "Transbank unavailable", code="TOKENIZATION_COMPLETION_FAILED"
        )

        def database_down(self, *args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(SessionRepository, "mark_failed", database_down)

        with pytest.raises(ProviderError) as exc_info:
            await tokenization.complete_from_callback("transbank", {"TBK_TOKEN": "T0001"})

        assert exc_info.value.code == "TOKENIZATION_COMPLETION_FAILED"
        assert load_session(session_factory, "tbk_T0001").status == SessionStatus.PENDING

    @pytest.mark.asyncio
    async def test_cancelled_inscription_is_recorded(self, tokenization, redirect_provider, session_factory):
        await tokenization.create_session(session_request())
        redirect_provider.errors["complete_session"] = InscriptionCancelled("User cancelled the inscription")

        with pytest.raises(InscriptionCancelled):
            await tokenization.complete_from_callback("transbank", {"TBK_TOKEN": "T0001"})

        session = load_session(session_factory, "tbk_T0001")
        assert session.status == SessionStatus.FAILED
        assert session.error_code == "INSCRIPTION_CANCELLED"
        assert session.token_id is None

    @pytest.mark.asyncio
    async def test_concurrent_completion_reaches_provider_once(self, tokenization, redirect_provider):
        await tokenization.create_session(session_request())

        entered = asyncio.Event()
        release = asyncio.Event()
        complete = redirect_provider.complete_session

        async def slow_complete(session, callback_data):
            entered.set()
            await release.wait()
            return await complete(session, callback_data)

        redirect_provider.complete_session = slow_complete

        first = asyncio.create_task(tokenization.complete_from_callback("transbank", {"TBK_TOKEN": "T0001"}))
        await entered.wait()

        with pytest.raises(SessionCompletionInProgress) as exc_info:
            await tokenization.complete_from_callback("transbank", {"TBK_TOKEN": "T0001"})

        release.set()
        result = await first

        assert exc_info.value.retryable is True
        assert result["session_id"] == "tbk_T0001"
        assert redirect_provider.call_count("complete_session") == 1

    @pytest.mark.asyncio
    async def test_stale_read_loses_the_claim(self, tokenization, redirect_provider, session_factory, monkeypatch):
        await tokenization.create_session(session_request())
        stale = load_session(session_factory, "tbk_T0001")
        # another attempt claims and fails after our read
        with session_scope(session_factory) as db:
            repo = SessionRepository(db)
            repo.claim_for_completion("tbk_T0001", 0, tokenization.clock(), tokenization.claim_ttl)
            repo.mark_failed("tbk_T0001", "PROVIDER_ERROR", "earlier attempt", version=1)

        monkeypatch.setattr(SessionRepository, "get", lambda self, session_id: stale)

        with pytest.raises(SessionCompletionInProgress):
            await tokenization.complete_session("tbk_T0001", {"TBK_TOKEN": "T0001"})

        assert redirect_provider.call_count("complete_session") == 0

    @pytest.mark.asyncio
    async def test_dedup_hit_still_completes_session(self, tokenization, session_factory):
        await tokenization.create_session(session_request())
        await tokenization.create_session(session_request())

        first = await tokenization.complete_from_callback("transbank", {"TBK_TOKEN": "T0001"})
        second = await tokenization.complete_from_callback("transbank", {"TBK_TOKEN": "T0002"})

        assert second["token_id"] == first["token_id"]
        assert load_session(session_factory, "tbk_T0002").status == SessionStatus.COMPLETED
        assert len(tokenization.list_cards("user_1")) == 1


class TestDefaultCard:
    @pytest.mark.asyncio
    async def test_set_default_card(self, tokenization, direct_provider):
        first = await tokenization.tokenize_direct(card_request(set_as_default=True))
        direct_provider.tokenized = TokenizedCard(
            payment_token="stripe_tok_2", card_last_four="4444", card_brand="mastercard"
        )
        second = await tokenization.tokenize_direct(card_request(card_number="5555555555554444"))

        result = tokenization.set_default_card("user_1", second["token_id"])

        assert result["is_default"] is True
        defaults = {card["token_id"]: card["is_default"] for card in tokenization.list_cards("user_1")}
        assert defaults == {first["token_id"]: False, second["token_id"]: True}

    @pytest.mark.asyncio
    async def test_set_default_checks_owner(self, tokenization):
        card = await tokenization.tokenize_direct(card_request())

        with pytest.raises(Forbidden):
            tokenization.set_default_card("user_2", card["token_id"])
        with pytest.raises(NotFound):
            tokenization.set_default_card("user_1", "card_missing")

    def test_list_cards_empty(self, tokenization):
        assert tokenization.list_cards("nobody") == []
