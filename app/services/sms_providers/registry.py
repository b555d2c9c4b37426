from __future__ import annotations

from typing import Callable, TypeVar

from app.core.config import Settings

from ..exceptions import SMSConfigurationError
from .base import BaseSMSProvider

ProviderType = TypeVar("ProviderType", bound=type[BaseSMSProvider])

_PROVIDERS: dict[str, type[BaseSMSProvider]] = {}


def register_provider(name: str) -> Callable[[ProviderType], ProviderType]:
    def decorator(provider_cls: ProviderType) -> ProviderType:
        _PROVIDERS[name] = provider_cls
        return provider_cls

    return decorator


def available_providers() -> list[str]:
    return sorted(_PROVIDERS)


def get_provider_class(name: str) -> type[BaseSMSProvider]:
    try:
        return _PROVIDERS[name]
    except KeyError:
        raise SMSConfigurationError(
            f"No SMS provider registered as {name!r}; available: {', '.join(available_providers())}"
        ) from None


def create_provider(settings: Settings) -> BaseSMSProvider:
    return get_provider_class(settings.SMS_PROVIDER).from_settings(settings)
