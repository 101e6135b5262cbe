"""Tokenization and stored-card endpoints."""

from typing import Any

import structlog
from fastapi import APIRouter, Request

from card_gateway.api.dependencies import Identity, Tokenization
from card_gateway.api.models import (
    DirectTokenizeRequestJSON,
    SessionRequestJSON,
    envelope,
)
from card_gateway.domain.exceptions import ValidationError
from card_gateway.services.tokenization import DirectTokenizationRequest, SessionRequest

logger = structlog.get_logger()

router = APIRouter(tags=["tokenization"])


@router.post("/tokenize/direct")
async def tokenize_direct(
    body: DirectTokenizeRequestJSON,
    identity: Identity,
    tokenization: Tokenization,
) -> dict[str, Any]:
    """Tokenize a card in one call (Stripe, MercadoPago)."""
    user_id = identity.require_self(body.user_id)
    request = DirectTokenizationRequest(
        user_id=user_id,
        provider=body.provider,
        card_number=body.card_number,
        card_exp_month=body.card_exp_month,
        card_exp_year=body.card_exp_year,
        card_cvv=body.card_cvv,
        card_holder_name=body.card_holder_name,
        card_token=body.card_token,
        set_as_default=body.set_as_default,
        alias=body.alias,
        email=body.email,
    )
    card = await tokenization.tokenize_direct(
        request, metadata={**body.metadata, **identity.trust_metadata()}
    )
    return envelope(card)


@router.post("/tokenize/session")
async def create_session(
    body: SessionRequestJSON,
    identity: Identity,
    tokenization: Tokenization,
) -> dict[str, Any]:
    """Start a redirect tokenization (Transbank Oneclick inscription)."""
    user_id = identity.require_self(body.user_id)
    request = SessionRequest(
        user_id=user_id,
        provider=body.provider,
        return_url=body.return_url,
        finish_redirect_url=body.finish_redirect_url,
        alias=body.alias,
        set_as_default=body.set_as_default,
        email=body.email,
    )
    session = await tokenization.create_session(
        request, metadata={**body.metadata, **identity.trust_metadata()}
    )
    return envelope(session)


async def read_callback_data(request: Request) -> dict[str, Any]:
    """Merge query string, form fields and JSON body of a provider callback."""
    data: dict[str, Any] = dict(request.query_params)
    if request.method != "POST":
        return data

    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("application/x-www-form-urlencoded", "multipart/form-data")):
        form = await request.form()
        data.update({key: value for key, value in form.items() if isinstance(value, str)})
    elif content_type.startswith("application/json"):
        try:
            body = await request.json()
        except ValueError as e:
            raise ValidationError("Callback body is not valid JSON") from e
        if isinstance(body, dict):
            data.update(body)
    return data


@router.api_route("/tokenize/complete/{provider}", methods=["GET", "POST"])
async def complete_session(
    provider: str,
    request: Request,
    tokenization: Tokenization,
) -> dict[str, Any]:
    """
    Provider return URL for redirect tokenization.

    Called by the user's browser on the way back from the provider, so it is
    not behind caller identity; the session is located from the provider's
    callback parameters.
    """
    callback_data = await read_callback_data(request)
    logger.info("tokenization_callback_received", provider=provider, fields=sorted(callback_data))
    result = await tokenization.complete_from_callback(provider, callback_data)
    return envelope(result)


@router.get("/tokenize/sessions/{session_id}")
async def get_session(
    session_id: str,
    identity: Identity,
    tokenization: Tokenization,
) -> dict[str, Any]:
    return envelope(tokenization.get_session(session_id, identity.user_id))


@router.get("/cards")
async def list_cards(identity: Identity, tokenization: Tokenization) -> dict[str, Any]:
    cards = tokenization.list_cards(identity.user_id)
    return envelope({"cards": cards, "total": len(cards)})


@router.post("/cards/{card_id}/default")
async def set_default_card(
    card_id: str,
    identity: Identity,
    tokenization: Tokenization,
) -> dict[str, Any]:
    return envelope(tokenization.set_default_card(identity.user_id, card_id))
