"""Remote calendar provider clients."""

from calmirror.sources.base import ProviderClient, ProviderFactory

__all__ = ["ProviderClient", "ProviderFactory"]
