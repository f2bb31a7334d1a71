"""Runtime-agnostic container configuration models."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Field names carrying this prefix configure berth itself and are never
# handed to a container runtime.
OWNER_PREFIX = "iob_"


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


class PortBinding(_Strict):
    """Published container port."""
    container_port: int
    host_port: Optional[int] = None
    host_ip: Optional[str] = None
    protocol: str = "tcp"


class VolumeMount(_Strict):
    """Bind, volume or other mount, plus owner-control sub-flags."""
    type: str = "volume"
    source: Optional[str] = None
    target: str
    read_only: Optional[bool] = None
    consistency: Optional[str] = None
    iob_backup: Optional[bool] = None
    iob_copy_volume: Optional[str] = None
    iob_auto_copy_from: Optional[str] = None
    iob_auto_copy_from_force: Optional[bool] = None


class TmpfsMount(_Strict):
    target: str
    size: Optional[int] = None
    mode: Optional[int] = None


class DeviceMapping(_Strict):
    host_path: str
    container_path: Optional[str] = None
    permissions: Optional[str] = None


class DNSConfig(_Strict):
    servers: Optional[List[str]] = None
    search: Optional[List[str]] = None
    options: Optional[List[str]] = None


class NetworkAttachment(_Strict):
    name: str
    aliases: Optional[List[str]] = None
    ipv4_address: Optional[str] = None
    ipv6_address: Optional[str] = None


class Healthcheck(_Strict):
    """Healthcheck with durations in milliseconds."""
    test: Optional[Union[str, List[str]]] = None
    interval: Optional[int] = None
    timeout: Optional[int] = None
    start_period: Optional[int] = None
    retries: Optional[int] = None


class RestartPolicy(_Strict):
    policy: str = "no"
    max_retries: Optional[int] = None


class LoggingConfig(_Strict):
    driver: Optional[str] = None
    options: Optional[Dict[str, str]] = None


class SecurityConfig(_Strict):
    privileged: Optional[bool] = None
    cap_add: Optional[List[str]] = None
    cap_drop: Optional[List[str]] = None
    security_opt: Optional[List[str]] = None
    seccomp: Optional[str] = None
    apparmor: Optional[str] = None
    no_new_privileges: Optional[bool] = None
    userns_mode: Optional[str] = None
    ipc: Optional[str] = None
    pid: Optional[str] = None


class StopConfig(_Strict):
    signal: Optional[str] = None
    grace_period_sec: Optional[int] = None


class Resources(_Strict):
    """Resource limits; memory values are bytes."""
    cpus: Optional[float] = None
    memory: Optional[int] = None
    memory_reservation: Optional[int] = None
    cpu_shares: Optional[int] = None
    shm_size: Optional[int] = None


class BuildConfig(_Strict):
    context: Optional[str] = None
    dockerfile: Optional[str] = None
    args: Optional[Dict[str, str]] = None
    target: Optional[str] = None
    labels: Optional[Dict[str, str]] = None


class ContainerConfig(_Strict):
    """Desired (or observed) specification for one container."""
    name: str = Field(min_length=1)
    image: str = Field(min_length=1)

    command: Optional[Union[str, List[str]]] = None
    entrypoint: Optional[Union[str, List[str]]] = None
    user: Optional[str] = None
    workdir: Optional[str] = None
    hostname: Optional[str] = None
    domainname: Optional[str] = None
    environment: Optional[Dict[str, str]] = None
    env_file: Optional[List[str]] = None
    labels: Optional[Dict[str, str]] = None
    tty: Optional[bool] = None
    stdin_open: Optional[bool] = None

    ports: Optional[List[PortBinding]] = None
    expose: Optional[List[str]] = None
    mounts: Optional[List[VolumeMount]] = None
    volumes: Optional[List[str]] = None
    tmpfs: Optional[List[TmpfsMount]] = None
    devices: Optional[List[DeviceMapping]] = None
    extra_hosts: Optional[List[str]] = None
    dns: Optional[DNSConfig] = None
    networks: Optional[List[NetworkAttachment]] = None
    network_mode: Optional[str] = None

    healthcheck: Optional[Healthcheck] = None
    restart: Optional[RestartPolicy] = None
    logging: Optional[LoggingConfig] = None
    security: Optional[SecurityConfig] = None
    sysctls: Optional[Dict[str, str]] = None
    depends_on: Optional[Union[List[str], Dict[str, Any]]] = None
    stop: Optional[StopConfig] = None
    resources: Optional[Resources] = None
    read_only: Optional[bool] = None
    build: Optional[BuildConfig] = None

    iob_enabled: bool = True
    iob_stop_on_unload: bool = True
    iob_auto_image_update: bool = False
    iob_monitoring_enabled: bool = False
    iob_wait_for_ready: bool = False

    @field_validator("user", mode="before")
    @classmethod
    def stringify_user(cls, v):
        """Allow numeric uids such as ``user: 1000``."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    def runtime_dict(self) -> Dict[str, Any]:
        """Dump the fields meant for a runtime, without owner-control data."""
        return strip_owner_fields(self.model_dump(exclude_none=True))


# User-supplied maps whose keys are data, not config fields.
_FREE_FORM_KEYS = frozenset({"labels", "environment", "sysctls", "options", "args"})


def strip_owner_fields(value: Any) -> Any:
    """Recursively drop keys carrying the owner-control prefix."""
    if isinstance(value, dict):
        return {
            key: item if key in _FREE_FORM_KEYS else strip_owner_fields(item)
            for key, item in value.items()
            if not key.startswith(OWNER_PREFIX)
        }
    if isinstance(value, list):
        return [strip_owner_fields(item) for item in value]
    return value
