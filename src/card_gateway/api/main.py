"""FastAPI application entry point for the Card Gateway service."""

from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import sessionmaker
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from card_gateway import __version__
from card_gateway.api.errors import register_exception_handlers
from card_gateway.api.routes import payments, tokenization, utilities, webhooks
from card_gateway.config import Settings, settings as default_settings
from card_gateway.infrastructure.database import create_db_engine, create_session_factory
from card_gateway.logging_config import configure_logging
from card_gateway.providers.registry import ProviderRegistry
from card_gateway.services.payments import PaymentOrchestrator
from card_gateway.services.tokenization import TokenizationOrchestrator
from card_gateway.services.webhooks import WebhookDispatcher

logger = structlog.get_logger()


def create_app(
    settings: Settings | None = None,
    registry: ProviderRegistry | None = None,
    session_factory: sessionmaker | None = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to run with (defaults to the environment)
        registry: Pre-built provider registry (defaults to one built from settings)
        session_factory: Pre-built SQLAlchemy session factory (defaults to one
            bound to ``settings.database_url``)
    """
    settings = settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Build providers, persistence and orchestrators; close them on shutdown."""
        configure_logging(settings)
        logger.info("starting_card_gateway", environment=settings.environment)

        engine = None
        factory = session_factory
        if factory is None:
            engine = create_db_engine(
                settings.database_url,
                echo=settings.debug,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                statement_timeout_ms=settings.db_statement_timeout_ms,
            )
            factory = create_session_factory(engine)
            logger.info("database_engine_initialized")

        providers = registry if registry is not None else ProviderRegistry.from_settings(settings)
        payment_orchestrator = PaymentOrchestrator(providers, factory)

        app.state.settings = settings
        app.state.session_factory = factory
        app.state.registry = providers
        app.state.tokenization = TokenizationOrchestrator(
            providers, factory, session_ttl=timedelta(minutes=settings.session_ttl_minutes)
        )
        app.state.payments = payment_orchestrator
        app.state.webhooks = WebhookDispatcher(providers, payment_orchestrator, factory)

        logger.info(
            "card_gateway_started",
            providers=[config.provider.value for config in providers.list_available()],
        )

        yield

        logger.info("shutting_down_card_gateway")
        await providers.close()
        if engine is not None:
            engine.dispose()
        logger.info("card_gateway_shutdown_complete")

    app = FastAPI(
        title="Card Gateway",
        description="Card tokenization and payment brokering across Stripe, Transbank and MercadoPago",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.trusted_proxies:
        app.add_middleware(ProxyHeadersMiddleware, trusted_hosts=settings.trusted_proxies)

    register_exception_handlers(app)

    app.include_router(tokenization.router)
    app.include_router(payments.router)
    app.include_router(webhooks.router)
    app.include_router(utilities.router)

    @app.get("/health")
    async def health_check() -> Response:
        """Health check endpoint.

        Returns:
            200 OK if the database answers
            503 Service Unavailable otherwise
        """
        try:
            with app.state.session_factory() as db:
                db.execute(text("SELECT 1"))
            return JSONResponse(
                status_code=200,
                content={
                    "status": "healthy",
                    "service": settings.service_name,
                    "environment": settings.environment,
                },
            )
        except Exception as e:
            logger.error("health_check_failed", error=str(e))
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "service": settings.service_name},
            )

    @app.get("/")
    async def root() -> dict:
        return {
            "service": settings.service_name,
            "version": __version__,
            "providers": [config.provider.value for config in app.state.registry.list_available()],
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "card_gateway.api.main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.debug,
        # Forwarded headers are honoured only through trusted_proxies
        proxy_headers=False,
    )
