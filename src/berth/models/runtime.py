"""Records returned by container runtime drivers."""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field


RUNNING_STATES = ("running", "restarting")


class ContainerInfo(BaseModel):
    """Summary of one container as listed by the runtime."""
    id: str
    name: str
    image: str = ""
    status: str = "unknown"
    labels: Dict[str, str] = Field(default_factory=dict)

    @property
    def is_running(self) -> bool:
        return self.status in RUNNING_STATES


class ImageInfo(BaseModel):
    repository: str
    tag: str = "latest"
    id: str

    @property
    def reference(self) -> str:
        return f"{self.repository}:{self.tag}"


class NetworkInfo(BaseModel):
    name: str
    id: str = ""
    driver: str = ""


class VolumeInfo(BaseModel):
    name: str
    driver: str = "local"
    mountpoint: str = ""


class ContainerStats(BaseModel):
    """One resource usage sample; sizes are bytes, cpu is percent."""
    cpu: Optional[float] = None
    mem_used: Optional[int] = None
    mem_max: Optional[int] = None
    mem_percent: Optional[float] = None
    net_read: Optional[int] = None
    net_write: Optional[int] = None
    block_read: Optional[int] = None
    block_write: Optional[int] = None
    pids: Optional[int] = None


class ContainerStatus(ContainerStats):
    """Last known state of a monitored container."""
    status: str = "unknown"
    status_ts: Optional[datetime] = None
