"""Unauthenticated discovery endpoints."""

from typing import Any

from fastapi import APIRouter

from card_gateway.api.dependencies import Registry
from card_gateway.api.models import envelope
from card_gateway.domain.timeutils import utcnow

router = APIRouter(prefix="/utilities", tags=["utilities"])


@router.get("/providers")
async def list_providers(registry: Registry) -> dict[str, Any]:
    """List configured providers with their tokenization method and mode."""
    providers = [config.to_summary() for config in registry.list_available()]
    return envelope(
        {
            "providers": providers,
            "total": len(providers),
            "timestamp": utcnow().isoformat(),
        }
    )
