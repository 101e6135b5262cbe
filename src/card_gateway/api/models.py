"""Pydantic models for the JSON API requests/responses.

Request models only shape and type-check the payload; business validation
(Luhn, expiry, one-of token_id/session_id) lives in the orchestrators so the
same rules apply to every caller.
"""

from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class DirectTokenizeRequestJSON(BaseModel):
    """JSON request model for one-call tokenization (direct and vault providers)."""

    user_id: Optional[str] = Field(None, description="Card owner; defaults to the caller")
    provider: str = Field(..., description="Provider name (stripe, mercadopago)")
    card_number: Optional[str] = Field(None, description="Card number (direct providers)")
    card_exp_month: Optional[int] = Field(None, description="Expiration month (1-12)")
    card_exp_year: Optional[int] = Field(None, description="Expiration year (4 digits)")
    card_cvv: Optional[str] = Field(None, description="Card verification value")
    card_holder_name: Optional[str] = Field(None, description="Name printed on the card")
    card_token: Optional[str] = Field(
        None, description="Client-side card token (vault providers)"
    )
    set_as_default: bool = Field(False, description="Make this the user's default card")
    alias: Optional[str] = Field(None, description="User-facing card label")
    email: Optional[str] = Field(None, description="Customer email for the provider")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "user_id": "user_123",
                "provider": "stripe",
                "card_number": "4242424242424242",
                "card_exp_month": 12,
                "card_exp_year": 2030,
                "card_cvv": "123",
                "card_holder_name": "Jane Doe",
                "set_as_default": True,
            }
        }
    )


class SessionRequestJSON(BaseModel):
    """JSON request model for starting a redirect tokenization session."""

    user_id: Optional[str] = Field(None, description="Card owner; defaults to the caller")
    provider: str = Field(..., description="Provider name (transbank)")
    return_url: str = Field(..., description="Where the provider sends the user back")
    finish_redirect_url: Optional[str] = Field(
        None, description="Where to send the user once the card is stored"
    )
    alias: Optional[str] = Field(None, description="User-facing card label")
    set_as_default: bool = Field(False, description="Make this the user's default card")
    email: Optional[str] = Field(None, description="Customer email for the provider")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata")


class ChargeRequestJSON(BaseModel):
    """JSON request model for charging a stored card."""

    user_id: Optional[str] = Field(None, description="Payer; defaults to the caller")
    professional_id: str = Field(..., description="Counterparty receiving the payment")
    service_request_id: str = Field(..., description="Service request being paid")
    amount: Decimal = Field(..., description="Amount in major units")
    currency: str = Field(..., description="ISO 4217 currency code")
    provider: str = Field(..., description="Provider that holds the card")
    description: str = Field(..., description="Statement description")
    token_id: Optional[str] = Field(None, description="Stored card id")
    session_id: Optional[str] = Field(None, description="Completed tokenization session id")
    security_token: Optional[str] = Field(
        None, description="Fresh CVV token for cards that require it"
    )
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Optional metadata")

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "professional_id": "pro_456",
                "service_request_id": "sr_789",
                "amount": "25000",
                "currency": "CLP",
                "provider": "transbank",
                "description": "Plumbing repair",
                "token_id": "card_3f2a9c0e1b7d4e8f",
            }
        }
    )


class RefundRequestJSON(BaseModel):
    """JSON request model for refunding a completed payment."""

    payment_id: str = Field(..., description="Payment to refund")
    amount: Optional[Decimal] = Field(None, description="Partial amount; full refund if omitted")
    reason: Optional[str] = Field(None, description="Free-text refund reason")


class ErrorBodyJSON(BaseModel):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class ErrorResponseJSON(BaseModel):
    """Envelope returned for every failed request."""

    success: bool = False
    error: ErrorBodyJSON


class EnvelopeJSON(BaseModel):
    """Envelope returned for every successful request."""

    success: bool = True
    data: Any = None


def envelope(data: Any) -> Dict[str, Any]:
    return EnvelopeJSON(data=data).model_dump()
