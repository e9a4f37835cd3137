from typing import Union

from .animation_provider import AnimationProvider, AnimationProviderId, ProviderCapabilities
from .errors import InvalidProviderError
from .runway import RunwayProvider
from .seedance import SeedanceProvider

PROVIDER_CLASSES: dict[AnimationProviderId, type[AnimationProvider]] = {
    AnimationProviderId.BYTEDANCE: SeedanceProvider,
    AnimationProviderId.RUNWAY: RunwayProvider,
}

ALLOWED_PROVIDERS = [p.value for p in AnimationProviderId]


def parse_provider(value: Union[str, AnimationProviderId, None]) -> AnimationProviderId:
    """Resolve a provider id against the allow-list. Never coerces unknown ids."""
    if isinstance(value, AnimationProviderId):
        return value
    normalized = (value or "").strip().lower()
    try:
        return AnimationProviderId(normalized)
    except ValueError:
        raise InvalidProviderError(
            f"Unknown animation provider: {value!r}. Available: {ALLOWED_PROVIDERS}"
        ) from None


class ProviderFactory:
    @staticmethod
    def get_provider(provider: Union[str, AnimationProviderId]) -> AnimationProvider:
        return PROVIDER_CLASSES[parse_provider(provider)]()

    @staticmethod
    def get_capabilities(provider: Union[str, AnimationProviderId]) -> ProviderCapabilities:
        return PROVIDER_CLASSES[parse_provider(provider)].capabilities

    @staticmethod
    def get_default():
        return AnimationProviderId.BYTEDANCE
