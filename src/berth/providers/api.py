"""Docker Engine API runtime driver built on the ``docker`` SDK."""

import asyncio
import io
import logging
import tarfile
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import docker
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.types import LogConfig, Mount

from berth.errors import ContainerRuntimeError
from berth.models.container import ContainerConfig
from berth.models.runtime import (
    ContainerInfo,
    ContainerStats,
    ImageInfo,
    NetworkInfo,
    VolumeInfo,
)
from berth.providers.base import RuntimeProvider, split_image_reference


logger = logging.getLogger(__name__)


_NANO = 1_000_000_000


def build_host_config_kwargs(config: ContainerConfig) -> Dict[str, Any]:
    """Translate a config into ``APIClient.create_host_config`` arguments."""
    kwargs: Dict[str, Any] = {}

    if config.ports:
        bindings: Dict[str, list] = {}
        for port in config.ports:
            key = f"{port.container_port}/{port.protocol}"
            if port.host_ip:
                binding = (port.host_ip, port.host_port) if port.host_port else (port.host_ip,)
            else:
                binding = port.host_port
            bindings.setdefault(key, []).append(binding)
        kwargs["port_bindings"] = bindings

    if config.mounts:
        kwargs["mounts"] = [
            Mount(
                target=mount.target,
                source=mount.source,
                type=mount.type,
                read_only=bool(mount.read_only),
                consistency=mount.consistency,
            )
            for mount in config.mounts
        ]
    if config.tmpfs:
        kwargs["tmpfs"] = {
            tmpfs.target: ",".join(
                option for option in (
                    f"size={tmpfs.size}" if tmpfs.size else "",
                    f"mode={tmpfs.mode}" if tmpfs.mode is not None else "",
                ) if option
            )
            for tmpfs in config.tmpfs
        }
    if config.devices:
        kwargs["devices"] = [
            ":".join(p for p in (d.host_path, d.container_path, d.permissions) if p)
            for d in config.devices
        ]
    if config.extra_hosts:
        kwargs["extra_hosts"] = {
            host: ip for host, _, ip in (entry.partition(":") for entry in config.extra_hosts)
        }
    if config.dns:
        kwargs["dns"] = config.dns.servers
        kwargs["dns_search"] = config.dns.search
        kwargs["dns_opt"] = config.dns.options
    if config.network_mode:
        kwargs["network_mode"] = config.network_mode
    elif config.networks:
        kwargs["network_mode"] = config.networks[0].name
    if config.restart:
        kwargs["restart_policy"] = {
            "Name": config.restart.policy,
            "MaximumRetryCount": config.restart.max_retries or 0,
        }
    if config.logging and config.logging.driver:
        kwargs["log_config"] = LogConfig(
            type=config.logging.driver, config=config.logging.options or {}
        )

    security = config.security
    if security:
        options = list(security.security_opt or [])
        if security.apparmor:
            options.append(f"apparmor={security.apparmor}")
        if security.seccomp:
            options.append(f"seccomp={security.seccomp}")
        if security.no_new_privileges:
            options.append("no-new-privileges")
        kwargs.update(
            privileged=bool(security.privileged),
            cap_add=security.cap_add,
            cap_drop=security.cap_drop,
            security_opt=options or None,
            userns_mode=security.userns_mode,
            ipc_mode=security.ipc,
            pid_mode=security.pid,
        )
    if config.sysctls:
        kwargs["sysctls"] = dict(config.sysctls)
    if config.resources:
        resources = config.resources
        if resources.cpus:
            kwargs["nano_cpus"] = int(resources.cpus * _NANO)
        kwargs.update(
            mem_limit=resources.memory,
            mem_reservation=resources.memory_reservation,
            cpu_shares=resources.cpu_shares,
            shm_size=resources.shm_size,
        )
    if config.read_only:
        kwargs["read_only"] = True

    return {key: value for key, value in kwargs.items() if value is not None}


def build_create_kwargs(config: ContainerConfig) -> Dict[str, Any]:
    """Translate a config into ``APIClient.create_container`` arguments."""
    kwargs: Dict[str, Any] = {
        "image": config.image,
        "name": config.name,
        "command": config.command,
        "entrypoint": config.entrypoint,
        "user": config.user,
        "working_dir": config.workdir,
        "hostname": config.hostname,
        "domainname": config.domainname,
        "environment": config.environment,
        "labels": config.labels,
        "tty": bool(config.tty),
        "stdin_open": bool(config.stdin_open),
    }
    exposed = [
        (port.container_port, port.protocol) if port.protocol != "tcp" else port.container_port
        for port in config.ports or []
    ]
    if exposed:
        kwargs["ports"] = exposed
    if config.volumes:
        kwargs["volumes"] = list(config.volumes)
    if config.healthcheck:
        check = config.healthcheck
        kwargs["healthcheck"] = {
            key: value for key, value in {
                "test": check.test,
                "interval": check.interval * 1_000_000 if check.interval else None,
                "timeout": check.timeout * 1_000_000 if check.timeout else None,
                "start_period": check.start_period * 1_000_000 if check.start_period else None,
                "retries": check.retries,
            }.items() if value is not None
        }
    if config.stop:
        kwargs["stop_signal"] = config.stop.signal
        kwargs["stop_timeout"] = config.stop.grace_period_sec
    return {key: value for key, value in kwargs.items() if value is not None}


def _cpu_percent(sample: Dict[str, Any]) -> Optional[float]:
    cpu = sample.get("cpu_stats") or {}
    precpu = sample.get("precpu_stats") or {}
    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - \
        (precpu.get("cpu_usage") or {}).get("total_usage", 0)
    system_delta = cpu.get("system_cpu_usage", 0) - precpu.get("system_cpu_usage", 0)
    if cpu_delta <= 0 or system_delta <= 0:
        return 0.0
    cpus = cpu.get("online_cpus") or len((cpu.get("cpu_usage") or {}).get("percpu_usage") or [1])
    return round(cpu_delta / system_delta * cpus * 100.0, 2)


def parse_stats_sample(sample: Dict[str, Any]) -> ContainerStats:
    """Reduce a raw engine stats sample to the fields berth reports."""
    memory = sample.get("memory_stats") or {}
    mem_used = memory.get("usage")
    cache = (memory.get("stats") or {}).get("inactive_file")
    if mem_used is not None and cache:
        mem_used -= cache
    mem_max = memory.get("limit")

    net_read = net_write = None
    for interface in (sample.get("networks") or {}).values():
        net_read = (net_read or 0) + interface.get("rx_bytes", 0)
        net_write = (net_write or 0) + interface.get("tx_bytes", 0)

    block_read = block_write = None
    for entry in (sample.get("blkio_stats") or {}).get("io_service_bytes_recursive") or []:
        op = (entry.get("op") or "").lower()
        if op == "read":
            block_read = (block_read or 0) + entry.get("value", 0)
        elif op == "write":
            block_write = (block_write or 0) + entry.get("value", 0)

    return ContainerStats(
        cpu=_cpu_percent(sample),
        mem_used=mem_used,
        mem_max=mem_max,
        mem_percent=round(mem_used / mem_max * 100.0, 2) if mem_used and mem_max else None,
        net_read=net_read,
        net_write=net_write,
        block_read=block_read,
        block_write=block_write,
        pids=(sample.get("pids_stats") or {}).get("current"),
    )


class DockerAPIProvider(RuntimeProvider):
    """Driver talking to the Docker Engine API through the ``docker`` SDK.

    The SDK is blocking, so every call is moved to a worker thread.
    """

    def __init__(self, base_url: Optional[str] = None):
        """Initialize API driver."""
        self.base_url = base_url
        self.client: Optional[docker.DockerClient] = None
        self.helper_image = "alpine:latest"

    async def initialize(self, config) -> None:
        """Initialize driver with configuration and connect."""
        self.base_url = self.base_url or config.runtime.base_url
        self.helper_image = config.runtime.helper_image
        timeout = config.runtime.timeout

        def connect():
            if self.base_url:
                return docker.DockerClient(base_url=self.base_url, timeout=timeout)
            return docker.from_env(timeout=timeout)

        try:
            self.client = await asyncio.to_thread(connect)
        except DockerException as e:
            raise ContainerRuntimeError(f"Cannot connect to Docker API: {e}") from e
        logger.info(f"Connected to Docker API at {self.base_url or 'environment default'}")

    async def _call(self, description: str, func: Callable, *args, **kwargs) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except DockerException as e:
            logger.error(f"{description} failed: {e}")
            raise ContainerRuntimeError(f"{description} failed: {e}") from e

    # -- Containers --

    async def list_containers(self, all: bool = True) -> List[ContainerInfo]:
        entries = await self._call("list containers", self.client.api.containers, all=all)
        return [
            ContainerInfo(
                id=entry["Id"],
                name=(entry.get("Names") or ["/"])[0].lstrip("/"),
                image=entry.get("Image", ""),
                status=(entry.get("State") or "unknown").lower(),
                labels=entry.get("Labels") or {},
            )
            for entry in entries
        ]

    async def inspect_container(self, name: str) -> Optional[Dict[str, Any]]:
        try:
            return await asyncio.to_thread(self.client.api.inspect_container, name)
        except NotFound:
            return None
        except DockerException as e:
            raise ContainerRuntimeError(f"inspect {name} failed: {e}") from e

    async def create_container(self, config: ContainerConfig) -> str:
        logger.info(f"Creating container {config.name} from {config.image}")
        api = self.client.api

        def create():
            host_config = api.create_host_config(**build_host_config_kwargs(config))
            networking_config = None
            if not config.network_mode and config.networks:
                first = config.networks[0]
                networking_config = api.create_networking_config({
                    first.name: api.create_endpoint_config(
                        aliases=first.aliases,
                        ipv4_address=first.ipv4_address,
                        ipv6_address=first.ipv6_address,
                    )
                })
            result = api.create_container(
                host_config=host_config,
                networking_config=networking_config,
                **build_create_kwargs(config),
            )
            if not config.network_mode:
                for network in (config.networks or [])[1:]:
                    api.connect_container_to_network(
                        result["Id"],
                        network.name,
                        aliases=network.aliases,
                        ipv4_address=network.ipv4_address,
                        ipv6_address=network.ipv6_address,
                    )
            return result["Id"]

        container_id = await self._call(f"create {config.name}", create)
        await self._verify_container(config.name, present=True)
        return container_id

    async def start_container(self, name: str) -> None:
        logger.info(f"Starting container {name}")
        await self._call(f"start {name}", self.client.api.start, name)

    async def stop_container(self, name: str) -> None:
        logger.info(f"Stopping container {name}")
        await self._call(f"stop {name}", self.client.api.stop, name)
        await self._verify_container(name, running=False)

    async def remove_container(self, name: str, force: bool = False) -> None:
        logger.info(f"Removing container {name}")
        await self._call(f"remove {name}", self.client.api.remove_container, name, force=force)
        await self._verify_container(name, present=False)

    async def restart_container(self, name: str) -> None:
        logger.info(f"Restarting container {name}")
        await self._call(f"restart {name}", self.client.api.restart, name)

    async def container_stats(self, name: str) -> Optional[ContainerStats]:
        try:
            sample = await asyncio.to_thread(self.client.api.stats, name, stream=False)
        except NotFound:
            return None
        except DockerException as e:
            raise ContainerRuntimeError(f"stats {name} failed: {e}") from e
        return parse_stats_sample(sample)

    # -- Images --

    async def list_images(self) -> List[ImageInfo]:
        images = []
        for entry in await self._call("list images", self.client.api.images):
            for reference in entry.get("RepoTags") or []:
                repository, tag = split_image_reference(reference)
                if repository and repository != "<none>":
                    images.append(ImageInfo(repository=repository, tag=tag, id=entry["Id"]))
        return images

    async def pull_image(self, image: str) -> None:
        logger.info(f"Pulling image {image}")
        repository, tag = split_image_reference(image)
        await self._call(f"pull {image}", self.client.images.pull, repository, tag=tag or "latest")

    async def tag_image(self, image: str, new_reference: str) -> None:
        repository, tag = split_image_reference(new_reference)
        await self._call(f"tag {image}", self.client.api.tag, image, repository, tag=tag or None)

    async def remove_image(self, image: str) -> None:
        logger.info(f"Removing image {image}")
        try:
            await asyncio.to_thread(self.client.api.remove_image, image)
        except ImageNotFound:
            logger.debug(f"Image {image} already absent")
        except DockerException as e:
            raise ContainerRuntimeError(f"remove image {image} failed: {e}") from e

    # -- Networks and volumes --

    async def list_networks(self) -> List[NetworkInfo]:
        return [
            NetworkInfo(name=entry["Name"], id=entry.get("Id", ""), driver=entry.get("Driver", ""))
            for entry in await self._call("list networks", self.client.api.networks)
        ]

    async def create_network(self, name: str, driver: str = "bridge") -> None:
        logger.info(f"Creating network {name}")
        await self._call(f"create network {name}", self.client.api.create_network, name, driver=driver)
        await self._verify_network(name, present=True)

    async def remove_network(self, name: str) -> None:
        logger.info(f"Removing network {name}")
        await self._call(f"remove network {name}", self.client.api.remove_network, name)
        await self._verify_network(name, present=False)

    async def list_volumes(self) -> List[VolumeInfo]:
        response = await self._call("list volumes", self.client.api.volumes)
        return [
            VolumeInfo(
                name=entry["Name"],
                driver=entry.get("Driver", "local"),
                mountpoint=entry.get("Mountpoint", ""),
            )
            for entry in (response or {}).get("Volumes") or []
        ]

    async def create_volume(self, name: str) -> None:
        logger.info(f"Creating volume {name}")
        await self._call(f"create volume {name}", self.client.api.create_volume, name)
        await self._verify_volume(name, present=True)

    async def remove_volume(self, name: str) -> None:
        logger.info(f"Removing volume {name}")
        await self._call(f"remove volume {name}", self.client.api.remove_volume, name)
        await self._verify_volume(name, present=False)

    async def copy_to_volume(self, volume: str, source_path: str) -> None:
        """Copy a directory's contents into a volume through a helper container."""
        source = Path(source_path)
        if not source.exists():
            raise ContainerRuntimeError(f"Copy source {source_path} does not exist")

        if await self.find_image(self.helper_image) is None:
            await self.pull_image(self.helper_image)

        api = self.client.api
        helper = f"berth_copy_{uuid.uuid4().hex[:12]}"

        def archive() -> bytes:
            buffer = io.BytesIO()
            with tarfile.open(fileobj=buffer, mode="w") as tar:
                if source.is_dir():
                    for child in sorted(source.iterdir()):
                        tar.add(str(child), arcname=child.name)
                else:
                    tar.add(str(source), arcname=source.name)
            return buffer.getvalue()

        def copy():
            api.create_container(
                self.helper_image,
                name=helper,
                host_config=api.create_host_config(binds={volume: {"bind": "/data", "mode": "rw"}}),
            )
            try:
                api.put_archive(helper, "/data", archive())
            finally:
                api.remove_container(helper, force=True)

        logger.info(f"Copying {source_path} into volume {volume}")
        await self._call(f"copy into volume {volume}", copy)
