"""Pydantic models for configuration, manifests and runtime records."""

from berth.models.config import BerthConfig, AgentConfig, OwnerConfig, RuntimeConfig
from berth.models.container import (
    ContainerConfig,
    PortBinding,
    VolumeMount,
    NetworkAttachment,
)
from berth.models.manifest import ComposeManifest, ComposeService
from berth.models.runtime import (
    ContainerInfo,
    ContainerStats,
    ContainerStatus,
    ImageInfo,
    NetworkInfo,
    VolumeInfo,
)

__all__ = [
    "BerthConfig",
    "AgentConfig",
    "OwnerConfig",
    "RuntimeConfig",
    "ContainerConfig",
    "PortBinding",
    "VolumeMount",
    "NetworkAttachment",
    "ComposeManifest",
    "ComposeService",
    "ContainerInfo",
    "ContainerStats",
    "ContainerStatus",
    "ImageInfo",
    "NetworkInfo",
    "VolumeInfo",
]
