"""Container runtime access interface."""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from berth.errors import VerificationError
from berth.models.container import ContainerConfig
from berth.models.runtime import (
    ContainerInfo,
    ContainerStats,
    ImageInfo,
    NetworkInfo,
    VolumeInfo,
)


logger = logging.getLogger(__name__)


def split_image_reference(image: str) -> tuple:
    """Split ``repo[:tag]`` without mistaking a registry port for a tag."""
    if "@" in image:
        return image, ""
    repository, sep, tag = image.rpartition(":")
    if not sep or "/" in tag:
        return image, ""
    return repository, tag


class RuntimeProvider(ABC):
    """Operations a container runtime driver must implement.

    Failures raise ``ContainerRuntimeError``; post-operation state checks
    raise ``VerificationError``.
    """

    @abstractmethod
    async def initialize(self, config: Any) -> None:
        """Initialize the driver with the agent configuration."""
        pass

    # -- Containers --

    @abstractmethod
    async def list_containers(self, all: bool = True) -> List[ContainerInfo]:
        pass

    @abstractmethod
    async def inspect_container(self, name: str) -> Optional[Dict[str, Any]]:
        """Return raw inspect data, or None when the container does not exist."""
        pass

    @abstractmethod
    async def create_container(self, config: ContainerConfig) -> str:
        """Create (without starting) a container and return its id."""
        pass

    @abstractmethod
    async def start_container(self, name: str) -> None:
        pass

    @abstractmethod
    async def stop_container(self, name: str) -> None:
        pass

    @abstractmethod
    async def remove_container(self, name: str, force: bool = False) -> None:
        pass

    @abstractmethod
    async def restart_container(self, name: str) -> None:
        pass

    @abstractmethod
    async def container_stats(self, name: str) -> Optional[ContainerStats]:
        pass

    # -- Images --

    @abstractmethod
    async def list_images(self) -> List[ImageInfo]:
        pass

    @abstractmethod
    async def pull_image(self, image: str) -> None:
        pass

    @abstractmethod
    async def tag_image(self, image: str, new_reference: str) -> None:
        pass

    @abstractmethod
    async def remove_image(self, image: str) -> None:
        pass

    # -- Networks and volumes --

    @abstractmethod
    async def list_networks(self) -> List[NetworkInfo]:
        pass

    @abstractmethod
    async def create_network(self, name: str, driver: str = "bridge") -> None:
        pass

    @abstractmethod
    async def remove_network(self, name: str) -> None:
        pass

    @abstractmethod
    async def list_volumes(self) -> List[VolumeInfo]:
        pass

    @abstractmethod
    async def create_volume(self, name: str) -> None:
        pass

    @abstractmethod
    async def remove_volume(self, name: str) -> None:
        pass

    @abstractmethod
    async def copy_to_volume(self, volume: str, source_path: str) -> None:
        """Copy the contents of a local path into a named volume."""
        pass

    # -- Shared helpers --

    async def find_container(self, name: str) -> Optional[ContainerInfo]:
        for container in await self.list_containers(all=True):
            if container.name == name:
                return container
        return None

    async def find_image(self, image: str) -> Optional[ImageInfo]:
        repository, tag = split_image_reference(image)
        tag = tag or "latest"
        for info in await self.list_images():
            if info.repository == repository and info.tag == tag:
                return info
        return None

    async def has_image(self, image: str) -> bool:
        return await self.find_image(image) is not None

    async def has_network(self, name: str) -> bool:
        return any(network.name == name for network in await self.list_networks())

    async def has_volume(self, name: str) -> bool:
        return any(volume.name == name for volume in await self.list_volumes())

    async def update_image(self, image: str) -> bool:
        """Pull an image and report whether its identity changed."""
        before = await self.find_image(image)
        await self.pull_image(image)
        after = await self.find_image(image)
        if after is None:
            raise VerificationError(f"Image {image} not found after pull")
        changed = before is None or before.id != after.id
        if changed:
            logger.info(f"Image {image} updated to {after.id}")
        return changed

    async def _verify_container(
        self,
        name: str,
        present: Optional[bool] = None,
        running: Optional[bool] = None,
    ) -> None:
        container = await self.find_container(name)
        if present is True and container is None:
            raise VerificationError(f"Container {name} not found after operation")
        if present is False and container is not None:
            raise VerificationError(f"Container {name} still found after remove")
        if running is not None and container is not None and container.is_running != running:
            state = "still running after stop" if not running else "not running after start"
            raise VerificationError(f"Container {name} {state}")

    async def _verify_network(self, name: str, present: bool) -> None:
        if await self.has_network(name) != present:
            state = "not found after create" if present else "still found after remove"
            raise VerificationError(f"Network {name} {state}")

    async def _verify_volume(self, name: str, present: bool) -> None:
        if await self.has_volume(name) != present:
            state = "not found after create" if present else "still found after remove"
            raise VerificationError(f"Volume {name} {state}")
