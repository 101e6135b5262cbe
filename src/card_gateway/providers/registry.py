"""
Provider registry.

Maps provider names to their configuration and lazily builds provider
instances. Configuration is loaded eagerly at startup from settings; the
provider object itself (SDK setup, HTTP client) is only built on first use so
that a process can start even when one provider's SDK is broken.
"""

from collections.abc import Callable, Iterable

import structlog

from card_gateway.config import Settings
from card_gateway.domain.exceptions import ProviderError, ProviderNotConfigured
from card_gateway.providers.base import (
    PaymentProvider,
    ProviderConfig,
    ProviderName,
    ProviderShape,
)
from card_gateway.providers.mercadopago_provider import MercadoPagoProvider
from card_gateway.providers.stripe_provider import StripeProvider
from card_gateway.providers.transbank_provider import TransbankProvider

logger = structlog.get_logger(__name__)

ProviderFactory = Callable[[ProviderConfig], PaymentProvider]

DEFAULT_FACTORIES: dict[ProviderName, ProviderFactory] = {
    ProviderName.STRIPE: StripeProvider.from_config,
    ProviderName.TRANSBANK: TransbankProvider.from_config,
    ProviderName.MERCADOPAGO: MercadoPagoProvider.from_config,
}


def parse_provider_name(name: str) -> ProviderName | None:
    """Return the ProviderName for ``name`` or None if it is not a known provider."""
    try:
        return ProviderName((name or "").strip().lower())
    except ValueError:
        return None


def load_provider_configs(settings: Settings) -> list[ProviderConfig]:
    """
    Build provider configs from settings.

    A provider is only configured when its primary credential is present.

    Args:
        settings: Application settings

    Returns:
        One ProviderConfig per configured provider
    """
    configs: list[ProviderConfig] = []

    if settings.stripe.secret_key:
        configs.append(
            ProviderConfig(
                provider=ProviderName.STRIPE,
                shape=ProviderShape.DIRECT,
                credentials={
                    "secret_key": settings.stripe.secret_key,
                    "public_key": settings.stripe.public_key,
                    "webhook_secret": settings.stripe.webhook_secret,
                },
                environment="production" if settings.stripe.secret_key.startswith("sk_live_") else "sandbox",
                enabled=settings.stripe.enabled,
                timeout_seconds=settings.stripe.timeout_seconds,
            )
        )

    if settings.transbank.api_key:
        configs.append(
            ProviderConfig(
                provider=ProviderName.TRANSBANK,
                shape=ProviderShape.REDIRECT,
                credentials={
                    "api_key": settings.transbank.api_key,
                    "commerce_code": settings.transbank.commerce_code,
                },
                environment=settings.transbank.environment,
                enabled=settings.transbank.enabled,
                timeout_seconds=settings.transbank.timeout_seconds,
                options={
                    "child_commerce_code": settings.transbank.child_commerce_code or None,
                    "inscription_email_domain": settings.transbank.inscription_email_domain,
                    "webhook_allowed_ips": tuple(settings.transbank.webhook_allowed_ips),
                },
            )
        )
        if settings.transbank.enabled and not settings.transbank.webhook_allowed_ips:
            # Notifications are unsigned, so an empty allowlist accepts any sender
            logger.warning(
                "transbank_webhook_allowlist_empty",
                setting="TRANSBANK__WEBHOOK_ALLOWED_IPS",
            )

    if settings.mercadopago.access_token:
        configs.append(
            ProviderConfig(
                provider=ProviderName.MERCADOPAGO,
                shape=ProviderShape.VAULT,
                credentials={
                    "access_token": settings.mercadopago.access_token,
                    "public_key": settings.mercadopago.public_key,
                    "webhook_secret": settings.mercadopago.webhook_secret,
                },
                environment=settings.mercadopago.environment,
                enabled=settings.mercadopago.enabled,
                timeout_seconds=settings.mercadopago.timeout_seconds,
                options={"base_url": settings.mercadopago.base_url},
            )
        )

    logger.info(
        "provider_configs_loaded",
        providers=[config.provider.value for config in configs],
    )
    return configs


class ProviderRegistry:
    """
    Registry of configured payment providers.

    Supports:
    - Registering provider configs at startup
    - Lazy, per-provider construction on first ``resolve``
    - Replacing factories (tests inject fakes this way)
    """

    def __init__(
        self,
        configs: Iterable[ProviderConfig] = (),
        factories: dict[ProviderName, ProviderFactory] | None = None,
    ) -> None:
        self._configs: dict[ProviderName, ProviderConfig] = {}
        self._instances: dict[ProviderName, PaymentProvider] = {}
        self._factories: dict[ProviderName, ProviderFactory] = dict(DEFAULT_FACTORIES)
        if factories:
            self._factories.update(factories)
        for config in configs:
            self.register(config)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        return cls(load_provider_configs(settings))

    def register(self, config: ProviderConfig) -> None:
        """
        Register (or replace) a provider configuration.

        Any previously built instance for the provider is discarded so the next
        ``resolve`` uses the new configuration.
        """
        self._configs[config.provider] = config
        self._instances.pop(config.provider, None)
        logger.info(
            "provider_registered",
            provider=config.provider.value,
            shape=config.shape.value,
            enabled=config.enabled,
            test_mode=config.test_mode,
        )

    def register_factory(self, name: ProviderName, factory: ProviderFactory) -> None:
        self._factories[name] = factory
        self._instances.pop(name, None)

    def get_config(self, name: str | ProviderName) -> ProviderConfig:
        provider = parse_provider_name(name) if isinstance(name, str) else name
        config = self._configs.get(provider) if provider else None
        if config is None or not config.enabled:
            raise ProviderNotConfigured(
                f"Provider {name} is not configured or disabled",
                details={"provider": str(getattr(name, "value", name))},
            )
        return config

    def is_available(self, name: str | ProviderName) -> bool:
        provider = parse_provider_name(name) if isinstance(name, str) else name
        config = self._configs.get(provider) if provider else None
        return config is not None and config.enabled

    def list_available(self) -> list[ProviderConfig]:
        return [config for config in self._configs.values() if config.enabled]

    def resolve(self, name: str | ProviderName) -> PaymentProvider:
        """
        Return the provider instance for ``name``, building it on first use.

        Raises:
            ProviderNotConfigured: Unknown, unconfigured or disabled provider
            ProviderError: SDK_NOT_AVAILABLE if construction fails; the failure
                is not cached and the next call tries again
        """
        config = self.get_config(name)

        instance = self._instances.get(config.provider)
        if instance is not None:
            return instance

        factory = self._factories.get(config.provider)
        if factory is None:
            raise ProviderNotConfigured(
                f"No implementation registered for {config.provider.value}",
                details={"provider": config.provider.value},
            )

        try:
            instance = factory(config)
        except Exception as e:
            logger.error(
                "provider_initialization_failed",
                provider=config.provider.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise ProviderError(
                f"Provider {config.provider.value} could not be initialized",
                code="SDK_NOT_AVAILABLE",
                details={"provider": config.provider.value, "error_type": type(e).__name__},
            ) from e

        self._instances[config.provider] = instance
        logger.info("provider_initialized", provider=config.provider.value)
        return instance

    async def close(self) -> None:
        """Close every built provider and forget the instances."""
        instances = list(self._instances.values())
        self._instances.clear()
        for instance in instances:
            await instance.close()
