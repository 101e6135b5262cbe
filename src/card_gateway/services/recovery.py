"""Best-effort secondary writes on failure paths."""

from collections.abc import Callable
from typing import Any

import structlog

logger = structlog.get_logger(__name__)


def best_effort(event: str, action: Callable[[], Any], **log_context: Any) -> bool:
    """
    Run ``action`` without letting its failure replace the caller's error.

    Used while handling a provider failure: the failure record is attempted,
    a failure to write it is logged with ``event`` and reported as False.

    Returns:
        True if ``action`` completed
    """
    try:
        action()
    except Exception as e:
        logger.error(event, error_type=type(e).__name__, error=str(e), **log_context)
        return False
    return True
