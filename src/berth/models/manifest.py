"""Normalized Compose-style manifest models."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ComposePort(BaseModel):
    """Long-form port definition."""
    model_config = ConfigDict(extra="ignore")

    target: int
    published: Optional[Union[int, str]] = None
    host_ip: Optional[str] = None
    protocol: Optional[str] = None
    mode: Optional[str] = None


class ComposeVolume(BaseModel):
    """Long-form volume definition."""
    model_config = ConfigDict(extra="ignore")

    type: Optional[str] = None
    source: Optional[Any] = None
    target: Optional[str] = None
    read_only: Optional[bool] = None
    consistency: Optional[str] = None
    bind: Optional[Dict[str, Any]] = None
    volume: Optional[Dict[str, Any]] = None
    tmpfs: Optional[Dict[str, Any]] = None


class ComposeHealthcheck(BaseModel):
    model_config = ConfigDict(extra="ignore")

    test: Union[str, List[str]] = Field(default_factory=lambda: ["NONE"])
    interval: Optional[str] = None
    timeout: Optional[str] = None
    start_period: Optional[str] = None
    retries: Optional[int] = None
    disable: Optional[bool] = None


class ComposeBuild(BaseModel):
    model_config = ConfigDict(extra="ignore")

    context: Optional[str] = None
    dockerfile: Optional[str] = None
    args: Optional[Dict[str, str]] = None
    target: Optional[str] = None
    labels: Optional[Dict[str, str]] = None


class ComposeLogging(BaseModel):
    model_config = ConfigDict(extra="ignore")

    driver: Optional[str] = None
    options: Optional[Dict[str, str]] = None


class ComposeService(BaseModel):
    """One service in canonical shape.

    Shorthand port and volume strings are kept as strings; the mapper parses
    them. Service-level ``x-*`` keys are collected in ``extensions``.
    """
    model_config = ConfigDict(extra="ignore")

    image: Optional[str] = None
    container_name: Optional[str] = None
    build: Optional[Union[str, ComposeBuild]] = None
    command: Optional[Union[str, List[str]]] = None
    entrypoint: Optional[Union[str, List[str]]] = None
    user: Optional[Union[str, int]] = None
    working_dir: Optional[str] = None
    hostname: Optional[str] = None
    domainname: Optional[str] = None
    environment: Optional[Dict[str, str]] = None
    env_file: Optional[List[str]] = None
    labels: Optional[Union[Dict[str, str], List[str]]] = None
    ports: Optional[List[Union[ComposePort, str]]] = None
    expose: Optional[List[str]] = None
    volumes: Optional[List[Union[ComposeVolume, str]]] = None
    devices: Optional[List[Union[str, Dict[str, Any]]]] = None
    extra_hosts: Optional[Union[List[str], Dict[str, str]]] = None
    dns: Optional[List[str]] = None
    dns_search: Optional[List[str]] = None
    dns_opt: Optional[List[str]] = None
    networks: Optional[Union[List[str], Dict[str, Optional[Dict[str, Any]]]]] = None
    network_mode: Optional[str] = None
    healthcheck: Optional[ComposeHealthcheck] = None
    restart: Optional[str] = None
    tty: Optional[bool] = None
    stdin_open: Optional[bool] = None
    depends_on: Optional[Union[List[str], Dict[str, Any]]] = None
    stop_grace_period: Optional[str] = None
    stop_signal: Optional[str] = None
    logging: Optional[ComposeLogging] = None
    security_opt: Optional[List[str]] = None
    cap_add: Optional[List[str]] = None
    cap_drop: Optional[List[str]] = None
    privileged: Optional[bool] = None
    read_only: Optional[bool] = None
    sysctls: Optional[Dict[str, str]] = None
    ipc: Optional[str] = None
    pid: Optional[str] = None
    userns_mode: Optional[str] = None
    cpus: Optional[Union[float, str]] = None
    mem_limit: Optional[Union[int, str]] = None
    mem_reservation: Optional[Union[int, str]] = None
    shm_size: Optional[Union[int, str]] = None
    deploy: Optional[Dict[str, Any]] = None
    extensions: Dict[str, Any] = Field(default_factory=dict)


class ComposeManifest(BaseModel):
    """A normalized manifest."""
    model_config = ConfigDict(extra="ignore")

    version: str = "3.9"
    services: Dict[str, ComposeService]
    networks: Optional[Dict[str, Any]] = None
    volumes: Optional[Dict[str, Any]] = None
    secrets: Optional[Dict[str, Any]] = None
    configs: Optional[Dict[str, Any]] = None
    docker_api: Optional[Union[str, Dict[str, Any]]] = None
    extensions: Dict[str, Any] = Field(default_factory=dict)
