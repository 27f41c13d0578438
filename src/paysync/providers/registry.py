"""Provider lookup: maps a Provider tag to a configured client."""
from typing import Callable, Dict

from paysync.config import Settings
from paysync.errors import ValidationError
from paysync.models.connection import Provider
from paysync.providers.base import ProviderClient
from paysync.providers.finch.client import FinchClient

_FACTORIES: Dict[str, Callable[[Settings], ProviderClient]] = {
    Provider.FINCH.value: FinchClient.from_settings,
}


def supported_providers():
    return sorted(_FACTORIES)


def get_provider_client(provider: str, settings: Settings) -> ProviderClient:
    """
    Build the client for `provider`.

    Raises:
        ValidationError: if the provider tag is unknown.
    """
    factory = _FACTORIES.get(getattr(provider, "value", provider))
    if factory is None:
        raise ValidationError(
            f"Unsupported provider: {provider} (supported: {', '.join(supported_providers())})"
        )
    return factory(settings)
