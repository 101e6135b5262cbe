"""Payment endpoints: charge, refund, status."""

from typing import Any

import structlog
from fastapi import APIRouter

from card_gateway.api.dependencies import Identity, Payments
from card_gateway.api.models import ChargeRequestJSON, RefundRequestJSON, envelope
from card_gateway.services.payments import PaymentRequest

logger = structlog.get_logger()

router = APIRouter(prefix="/payment", tags=["payments"])


@router.post("/charge")
async def charge(
    body: ChargeRequestJSON,
    identity: Identity,
    payments: Payments,
) -> dict[str, Any]:
    """Charge a stored card identified by token_id or a completed session_id."""
    user_id = identity.require_self(body.user_id)
    request = PaymentRequest(
        user_id=user_id,
        professional_id=body.professional_id,
        service_request_id=body.service_request_id,
        amount=body.amount,
        currency=body.currency,
        provider=body.provider,
        description=body.description,
        token_id=body.token_id,
        session_id=body.session_id,
        security_token=body.security_token,
    )
    result = await payments.process_payment(
        request, metadata={**body.metadata, **identity.trust_metadata()}
    )
    return envelope(result)


@router.post("/refund")
async def refund(
    body: RefundRequestJSON,
    identity: Identity,
    payments: Payments,
) -> dict[str, Any]:
    result = await payments.refund_payment(
        body.payment_id,
        identity.user_id,
        amount=body.amount,
        metadata={"reason": body.reason, **identity.trust_metadata()},
    )
    return envelope(result)


@router.get("/{payment_id}")
async def get_payment(payment_id: str, identity: Identity, payments: Payments) -> dict[str, Any]:
    return envelope(payments.get_payment(payment_id, identity.user_id))


@router.post("/{payment_id}/sync")
async def sync_payment(payment_id: str, identity: Identity, payments: Payments) -> dict[str, Any]:
    """Refresh the payment's status from its provider."""
    return envelope(await payments.sync_payment_status(payment_id, identity.user_id))
