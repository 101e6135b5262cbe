"""Structured logging for the Card Gateway.

Every event passes through a redaction step before rendering, so a card
number or provider secret handed to a logger by mistake is masked.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from card_gateway.config import Settings
from card_gateway.domain.card_utils import sanitize_for_log


def redact_sensitive_fields(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask card data and credentials anywhere in the event."""
    return sanitize_for_log(event_dict)


def stamp_service(service_name: str, environment: str) -> Processor:
    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", service_name)
        event_dict.setdefault("environment", environment)
        return event_dict

    return processor


def build_processors(
    service_name: str = "card-gateway",
    environment: str = "development",
    format_as_json: bool = True,
) -> list[Processor]:
    """
    Processor chain shared by the API and the migration tooling.

    Redaction sits directly in front of the renderer.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        stamp_service(service_name, environment),
        redact_sensitive_fields,
    ]
    processors.append(
        structlog.processors.JSONRenderer() if format_as_json else structlog.dev.ConsoleRenderer()
    )
    return processors


def configure_logging(settings: Settings) -> None:
    """Route structlog through stdlib logging at the configured level."""
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    # SQL echo stays on the engine's own logger when debug is set
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.debug else logging.WARNING)

    structlog.configure(
        processors=build_processors(settings.service_name, settings.environment, settings.log_json),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_request_context(**values: Any) -> None:
    """Attach request-scoped fields (request id, caller) to every later event."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in values.items() if value is not None}
    )
