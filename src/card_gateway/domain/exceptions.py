"""Error taxonomy for the Card Gateway service.

Every error raised across a component boundary is a ``GatewayError`` carrying a
machine-readable ``code``, a human-readable ``message``, optional ``details``
and the HTTP status it maps to. Errors are either TERMINAL (retrying the same
request cannot succeed) or RETRYABLE (``retryable = True``); the service never
retries on its own, the flag is surfaced for callers.
"""

from typing import Any


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable
        self.details = details or {}

    def to_dict(self, include_details: bool = True) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if include_details and self.details:
            body["details"] = self.details
        return body

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(GatewayError):
    """Request is malformed or missing required fields. TERMINAL."""

    code = "VALIDATION_ERROR"
    status_code = 400


class Unauthorized(GatewayError):
    """Caller or webhook sender could not be authenticated. TERMINAL."""

    code = "UNAUTHORIZED"
    status_code = 401


class Forbidden(GatewayError):
    """
    Authenticated caller does not own the resource.

    Shares the UNAUTHORIZED code with ``Unauthorized`` but maps to 403.
    """

    code = "UNAUTHORIZED"
    status_code = 403


class NotFound(GatewayError):
    """Session, card or payment does not exist (or is not usable). TERMINAL."""

    code = "NOT_FOUND"
    status_code = 404


class MethodNotAllowed(GatewayError):
    code = "METHOD_NOT_ALLOWED"
    status_code = 405


class ProviderNotConfigured(GatewayError):
    """Provider is unknown, disabled or missing credentials. TERMINAL."""

    code = "PROVIDER_NOT_CONFIGURED"
    status_code = 400


class MethodNotSupported(GatewayError):
    """Operation does not apply to the provider's tokenization shape. TERMINAL."""

    code = "METHOD_NOT_SUPPORTED"
    status_code = 400


class SessionAlreadyCompleted(GatewayError):
    """
    Session was already completed.

    This is a TERMINAL error and is always distinguishable from other
    completion failures so that duplicate callbacks can be told apart.
    """

    code = "SESSION_ALREADY_COMPLETED"
    status_code = 409


class SessionExpired(GatewayError):
    """Session passed its expires_at before completion. TERMINAL."""

    code = "SESSION_EXPIRED"
    status_code = 409


class InscriptionCancelled(GatewayError):
    """User cancelled (or timed out) the hosted enrollment step. TERMINAL."""

    code = "INSCRIPTION_CANCELLED"
    status_code = 409


class SessionCompletionInProgress(GatewayError):
    """
    Another request holds the completion claim for this session.

    This is a RETRYABLE error: once the concurrent attempt finishes the
    session is either completed or failed (and retryable again).
    """

    code = "SESSION_COMPLETION_IN_PROGRESS"
    status_code = 409
    retryable = True


class RefundInProgress(GatewayError):
    """Another request is refunding this payment. RETRYABLE once it settles."""

    code = "REFUND_IN_PROGRESS"
    status_code = 409
    retryable = True


class InvalidState(GatewayError):
    """Entity is not in a state that allows the operation. TERMINAL."""

    code = "INVALID_STATE"
    status_code = 409


class ProviderError(GatewayError):
    """
    Provider call failed.

    RETRYABLE by default (network errors, 5xx, rate limits). Adapters pass
    ``retryable=False`` for rejections that cannot succeed on retry. Codes:
    SDK_NOT_AVAILABLE, SESSION_CREATION_FAILED, TOKENIZATION_FAILED,
    TOKENIZATION_COMPLETION_FAILED, PAYMENT_FAILED, REFUND_FAILED,
    STATUS_CHECK_FAILED.
    """

    code = "PROVIDER_ERROR"
    status_code = 500
    retryable = True


class ProviderTimeout(ProviderError):
    """Provider did not answer within its configured timeout. RETRYABLE."""

    code = "PROVIDER_TIMEOUT"
    status_code = 504


def wrap_unexpected(exc: BaseException) -> GatewayError:
    """Wrap a foreign exception as INTERNAL_ERROR, keeping the original as details."""
    if isinstance(exc, GatewayError):
        return exc
    return GatewayError(
        "An unexpected error occurred",
        code="INTERNAL_ERROR",
        details={"error_type": type(exc).__name__, "error": str(exc)},
    )
