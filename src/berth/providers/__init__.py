"""Container runtime drivers for berth."""

from berth.providers.base import RuntimeProvider
from berth.providers.cli import DockerCLIProvider
from berth.providers.api import DockerAPIProvider
from berth.providers.registry import ProviderRegistry

__all__ = [
    "RuntimeProvider",
    "DockerCLIProvider",
    "DockerAPIProvider",
    "ProviderRegistry",
]
