"""Exceptions raised by tributary."""


class TributaryError(Exception):
    """Base class for all tributary errors."""


class CapabilityUnsupported(TributaryError):
    """The provider does not implement the requested capability.

    Raised at call time, before anything is sent to the backend. There is
    no implicit fallback to another capability.

    Args:
        capability: Name of the missing capability, e.g. ``"stream_text"``.
        provider: Name of the provider that was asked for it.
    """

    def __init__(self, capability: str, provider: str = ""):
        self.capability = capability
        self.provider = provider
        target = f"Provider '{provider}'" if provider else "Current provider"
        super().__init__(f"{target} does not support {capability}")


class ProviderConfigurationError(TributaryError):
    """A provider's validator rejected its configuration."""


class ProviderError(TributaryError):
    """A bundled provider failed talking to its backend."""


class NoResultProduced(TributaryError):
    """The stream ended before a single chunk was received."""
