"""Runtime driver registry."""

import logging
from typing import Any, Dict, List, Optional, Type, Union

from berth.providers.api import DockerAPIProvider
from berth.providers.base import RuntimeProvider
from berth.providers.cli import DockerCLIProvider


logger = logging.getLogger(__name__)


def docker_api_base_url(docker_api: Union[str, Dict[str, Any]], hosts: Dict[str, str]) -> str:
    """Resolve a manifest ``iobDockerApi`` entry to an engine URL.

    A mapping names ``host``, ``port`` (default 2375) and ``protocol``;
    a string names an entry of the configured ``runtime.hosts``.
    """
    if isinstance(docker_api, str):
        if docker_api not in hosts:
            raise ValueError(f"Unknown Docker host: {docker_api}")
        return hosts[docker_api]
    if isinstance(docker_api, dict):
        host = docker_api.get("host")
        if not host:
            raise ValueError("iobDockerApi requires a host")
        port = docker_api.get("port") or 2375
        protocol = docker_api.get("protocol") or "tcp"
        return f"{protocol}://{host}:{port}"
    raise ValueError(f"Invalid iobDockerApi value: {docker_api!r}")


class ProviderRegistry:
    """Registry that builds the configured runtime driver."""

    def __init__(self):
        """Initialize provider registry."""
        self._provider: Optional[RuntimeProvider] = None
        self._provider_classes: Dict[str, Type[RuntimeProvider]] = {
            "cli": DockerCLIProvider,
            "api": DockerAPIProvider,
        }

    async def initialize(self, config, docker_api: Union[str, Dict[str, Any], None] = None):
        """Instantiate and initialize the driver named by ``runtime.driver``.

        A manifest-level Docker API selection overrides the configured driver.
        """
        driver = config.runtime.driver
        if docker_api:
            driver = "api"
            config.runtime.base_url = docker_api_base_url(docker_api, config.runtime.hosts)

        provider_class = self._provider_classes.get(driver)
        if provider_class is None:
            raise ValueError(f"Unknown runtime driver: {driver}")

        try:
            provider = provider_class()
            await provider.initialize(config)
        except Exception as e:
            logger.error(f"Failed to initialize runtime driver {driver}: {e}")
            raise

        self._provider = provider
        logger.debug(f"Initialized runtime driver: {driver}")
        return provider

    def get_provider(self) -> Optional[RuntimeProvider]:
        """Get the active runtime driver."""
        return self._provider

    def list_drivers(self) -> List[str]:
        """List available driver names."""
        return list(self._provider_classes.keys())
