"""Payment provider integrations."""

from card_gateway.providers.base import (
    CallbackTemplate,
    DirectTokenizationInput,
    PaymentProvider,
    ProviderConfig,
    ProviderName,
    ProviderShape,
    SessionHandle,
    SessionInput,
    WebhookDelivery,
)
from card_gateway.providers.mercadopago_provider import MercadoPagoProvider
from card_gateway.providers.registry import (
    ProviderRegistry,
    load_provider_configs,
    parse_provider_name,
)
from card_gateway.providers.stripe_provider import StripeProvider
from card_gateway.providers.transbank_provider import TransbankProvider

__all__ = [
    "CallbackTemplate",
    "DirectTokenizationInput",
    "MercadoPagoProvider",
    "PaymentProvider",
    "ProviderConfig",
    "ProviderName",
    "ProviderRegistry",
    "ProviderShape",
    "SessionHandle",
    "SessionInput",
    "StripeProvider",
    "TransbankProvider",
    "WebhookDelivery",
    "load_provider_configs",
    "parse_provider_name",
]
