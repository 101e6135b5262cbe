"""Exception handlers rendering the error envelope."""

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from card_gateway.domain.exceptions import (
    GatewayError,
    MethodNotAllowed,
    NotFound,
    ValidationError,
    wrap_unexpected,
)

logger = structlog.get_logger(__name__)


def error_response(error: GatewayError) -> JSONResponse:
    # Internal error text never leaves the service
    include_details = error.code != "INTERNAL_ERROR"
    return JSONResponse(
        status_code=error.status_code,
        content={"success": False, "error": error.to_dict(include_details=include_details)},
    )


async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    log = logger.warning if exc.status_code < 500 else logger.error
    log(
        "request_failed",
        path=request.url.path,
        method=request.method,
        error_code=exc.code,
        status_code=exc.status_code,
        retryable=exc.retryable,
    )
    return error_response(exc)


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    error = wrap_unexpected(exc)
    logger.exception(
        "request_crashed",
        path=request.url.path,
        method=request.method,
        **error.details,
    )
    return error_response(error)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {"field": ".".join(str(part) for part in err.get("loc", ())), "message": err.get("msg")}
        for err in exc.errors()
    ]
    return error_response(ValidationError("Invalid request", details={"errors": errors}))


async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    if exc.status_code == 405:
        error: GatewayError = MethodNotAllowed(
            f"Method {request.method} not allowed", details={"path": request.url.path}
        )
    elif exc.status_code == 404:
        error = NotFound("Route not found", details={"path": request.url.path})
    else:
        error = GatewayError(str(exc.detail), code="HTTP_ERROR", status_code=exc.status_code)
    return error_response(error)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, http_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
