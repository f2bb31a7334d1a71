"""Docker CLI runtime driver."""

import json
import logging
import shlex
import subprocess
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from berth.errors import ContainerRuntimeError
from berth.models.container import ContainerConfig
from berth.models.runtime import (
    ContainerInfo,
    ContainerStats,
    ImageInfo,
    NetworkInfo,
    VolumeInfo,
)
from berth.providers.base import RuntimeProvider
from berth.utils.process import CommandResult, run_command
from berth.utils.units import parse_size


logger = logging.getLogger(__name__)


JSON_FORMAT = "{{json .}}"


def _parse_labels(value: str) -> Dict[str, str]:
    labels = {}
    for entry in (value or "").split(","):
        if entry:
            key, _, item = entry.partition("=")
            labels[key] = item
    return labels


def _parse_pair(value: str, binary: bool = True) -> tuple:
    """Parse ``"12.3MiB / 1.9GiB"`` style pairs into byte counts."""
    left, _, right = (value or "").partition("/")
    return parse_size(left.strip(), binary), parse_size(right.strip(), binary)


def _parse_percent(value: str) -> Optional[float]:
    try:
        return float((value or "").strip().rstrip("%"))
    except ValueError:
        return None


def format_port(port) -> str:
    """Render a port binding as ``[ip:][host_port:]container_port/proto``."""
    spec = str(port.container_port)
    if port.host_port:
        spec = f"{port.host_port}:{spec}"
        if port.host_ip:
            spec = f"{port.host_ip}:{spec}"
    elif port.host_ip:
        spec = f"{port.host_ip}::{spec}"
    return f"{spec}/{port.protocol}"


def format_mount(mount) -> str:
    parts = [f"type={mount.type}"]
    if mount.source:
        parts.append(f"source={mount.source}")
    parts.append(f"target={mount.target}")
    if mount.read_only:
        parts.append("readonly")
    if mount.consistency:
        parts.append(f"consistency={mount.consistency}")
    return ",".join(parts)


def build_create_args(config: ContainerConfig) -> List[str]:
    """Translate a config into ``docker create`` arguments.

    Owner-control fields are not part of the output. Only the first network
    attachment is passed here; the rest are connected after creation.
    """
    args = ["--name", config.name]

    if config.tty:
        args.append("-t")
    if config.stdin_open:
        args.append("-i")
    if config.hostname:
        args += ["--hostname", config.hostname]
    if config.domainname:
        args += ["--domainname", config.domainname]
    if config.user:
        args += ["--user", config.user]
    if config.workdir:
        args += ["--workdir", config.workdir]
    if config.entrypoint is not None:
        entrypoint = config.entrypoint
        if isinstance(entrypoint, list):
            if len(entrypoint) > 1:
                logger.warning(
                    f"Container {config.name}: the docker CLI takes a single entrypoint "
                    f"executable, extra entrypoint arguments are passed as command"
                )
            entrypoint = entrypoint[0] if entrypoint else ""
        args += ["--entrypoint", entrypoint]

    for env_file in config.env_file or []:
        args += ["--env-file", env_file]
    for key, value in (config.environment or {}).items():
        args += ["-e", f"{key}={value}"]
    for key, value in (config.labels or {}).items():
        args += ["--label", f"{key}={value}"]

    for port in config.ports or []:
        args += ["-p", format_port(port)]
    for port in config.expose or []:
        args += ["--expose", port]
    for volume in config.volumes or []:
        args += ["-v", volume]
    for mount in config.mounts or []:
        args += ["--mount", format_mount(mount)]
    for tmpfs in config.tmpfs or []:
        options = []
        if tmpfs.size:
            options.append(f"size={tmpfs.size}")
        if tmpfs.mode is not None:
            options.append(f"mode={tmpfs.mode}")
        args += ["--tmpfs", tmpfs.target + (":" + ",".join(options) if options else "")]
    for device in config.devices or []:
        spec = ":".join(
            part for part in (device.host_path, device.container_path, device.permissions) if part
        )
        args += ["--device", spec]

    for host in config.extra_hosts or []:
        args += ["--add-host", host]
    if config.dns:
        for server in config.dns.servers or []:
            args += ["--dns", server]
        for search in config.dns.search or []:
            args += ["--dns-search", search]
        for option in config.dns.options or []:
            args += ["--dns-option", option]

    if config.network_mode:
        args += ["--network", config.network_mode]
    elif config.networks:
        first = config.networks[0]
        args += ["--network", first.name]
        for alias in first.aliases or []:
            args += ["--network-alias", alias]
        if first.ipv4_address:
            args += ["--ip", first.ipv4_address]
        if first.ipv6_address:
            args += ["--ip6", first.ipv6_address]

    if config.healthcheck:
        check = config.healthcheck
        test = check.test
        if test == ["NONE"]:
            args.append("--no-healthcheck")
        elif test:
            if isinstance(test, list):
                if test[0] == "CMD-SHELL":
                    test = " ".join(test[1:])
                else:
                    test = shlex.join(test[1:] if test[0] == "CMD" else test)
            args += ["--health-cmd", test]
        if check.interval:
            args += ["--health-interval", f"{check.interval}ms"]
        if check.timeout:
            args += ["--health-timeout", f"{check.timeout}ms"]
        if check.start_period:
            args += ["--health-start-period", f"{check.start_period}ms"]
        if check.retries is not None:
            args += ["--health-retries", str(check.retries)]

    if config.restart:
        policy = config.restart.policy
        if policy == "on-failure" and config.restart.max_retries:
            policy = f"{policy}:{config.restart.max_retries}"
        args += ["--restart", policy]

    if config.logging:
        if config.logging.driver:
            args += ["--log-driver", config.logging.driver]
        for key, value in (config.logging.options or {}).items():
            args += ["--log-opt", f"{key}={value}"]

    security = config.security
    if security:
        if security.privileged:
            args.append("--privileged")
        for cap in security.cap_add or []:
            args += ["--cap-add", cap]
        for cap in security.cap_drop or []:
            args += ["--cap-drop", cap]
        if security.apparmor:
            args += ["--security-opt", f"apparmor={security.apparmor}"]
        if security.seccomp:
            args += ["--security-opt", f"seccomp={security.seccomp}"]
        if security.no_new_privileges:
            args += ["--security-opt", "no-new-privileges"]
        for option in security.security_opt or []:
            args += ["--security-opt", option]
        if security.userns_mode:
            args += ["--userns", security.userns_mode]
        if security.ipc:
            args += ["--ipc", security.ipc]
        if security.pid:
            args += ["--pid", security.pid]

    for key, value in (config.sysctls or {}).items():
        args += ["--sysctl", f"{key}={value}"]

    if config.stop:
        if config.stop.signal:
            args += ["--stop-signal", config.stop.signal]
        if config.stop.grace_period_sec is not None:
            args += ["--stop-timeout", str(config.stop.grace_period_sec)]

    resources = config.resources
    if resources:
        if resources.cpus:
            args += ["--cpus", str(resources.cpus)]
        if resources.memory:
            args += ["--memory", str(resources.memory)]
        if resources.memory_reservation:
            args += ["--memory-reservation", str(resources.memory_reservation)]
        if resources.cpu_shares:
            args += ["--cpu-shares", str(resources.cpu_shares)]
        if resources.shm_size:
            args += ["--shm-size", str(resources.shm_size)]

    if config.read_only:
        args.append("--read-only")

    args.append(config.image)

    if isinstance(config.entrypoint, list):
        args += config.entrypoint[1:]
    if config.command is not None:
        if isinstance(config.command, list):
            args += config.command
        else:
            args += shlex.split(config.command)

    return args


class DockerCLIProvider(RuntimeProvider):
    """Driver that shells out to the ``docker`` command line client."""

    def __init__(self):
        """Initialize CLI driver."""
        self.binary = "docker"
        self.use_sudo = False
        self.timeout: Optional[int] = None
        self.helper_image = "alpine:latest"

    async def initialize(self, config) -> None:
        """Initialize driver with configuration."""
        self.binary = config.runtime.binary
        self.use_sudo = config.runtime.use_sudo
        self.timeout = config.runtime.timeout
        self.helper_image = config.runtime.helper_image

    async def _docker(self, *args: str, check: bool = True) -> CommandResult:
        cmd = [self.binary, *args]
        if self.use_sudo:
            cmd = ["sudo", "-n", *cmd]
        try:
            return await run_command(cmd, check=check, timeout=self.timeout)
        except subprocess.CalledProcessError as e:
            logger.error(f"docker {args[0]} failed: {e.stderr.strip()}")
            raise ContainerRuntimeError(
                f"docker {' '.join(args[:2])} failed: {e.stderr.strip() or e}"
            ) from e
        except subprocess.TimeoutExpired as e:
            logger.error(f"docker {args[0]} timed out after {self.timeout}s")
            raise ContainerRuntimeError(f"docker {args[0]} timed out") from e
        except OSError as e:
            raise ContainerRuntimeError(f"Cannot run {self.binary}: {e}") from e

    async def _json_lines(self, *args: str) -> List[Dict[str, Any]]:
        result = await self._docker(*args, "--format", JSON_FORMAT)
        return [json.loads(line) for line in result.stdout.splitlines() if line.strip()]

    # -- Containers --

    async def list_containers(self, all: bool = True) -> List[ContainerInfo]:
        args = ["ps", "--no-trunc"]
        if all:
            args.append("-a")
        containers = []
        for entry in await self._json_lines(*args):
            containers.append(ContainerInfo(
                id=entry.get("ID", ""),
                name=entry.get("Names", "").split(",")[0],
                image=entry.get("Image", ""),
                status=(entry.get("State") or "unknown").lower(),
                labels=_parse_labels(entry.get("Labels", "")),
            ))
        return containers

    async def inspect_container(self, name: str) -> Optional[Dict[str, Any]]:
        result = await self._docker("container", "inspect", name, check=False)
        if result.returncode != 0:
            logger.debug(f"Container {name} not found: {result.stderr.strip()}")
            return None
        data = json.loads(result.stdout)
        return data[0] if data else None

    async def create_container(self, config: ContainerConfig) -> str:
        logger.info(f"Creating container {config.name} from {config.image}")
        result = await self._docker("create", *build_create_args(config))
        container_id = result.stdout.strip()

        if not config.network_mode and config.networks:
            for network in config.networks[1:]:
                args = ["network", "connect"]
                for alias in network.aliases or []:
                    args += ["--alias", alias]
                if network.ipv4_address:
                    args += ["--ip", network.ipv4_address]
                if network.ipv6_address:
                    args += ["--ip6", network.ipv6_address]
                await self._docker(*args, network.name, config.name)

        await self._verify_container(config.name, present=True)
        return container_id

    async def start_container(self, name: str) -> None:
        logger.info(f"Starting container {name}")
        await self._docker("start", name)

    async def stop_container(self, name: str) -> None:
        logger.info(f"Stopping container {name}")
        await self._docker("stop", name)
        await self._verify_container(name, running=False)

    async def remove_container(self, name: str, force: bool = False) -> None:
        logger.info(f"Removing container {name}")
        await self._docker("rm", *(["-f"] if force else []), name)
        await self._verify_container(name, present=False)

    async def restart_container(self, name: str) -> None:
        logger.info(f"Restarting container {name}")
        await self._docker("restart", name)

    async def container_stats(self, name: str) -> Optional[ContainerStats]:
        entries = await self._json_lines("stats", "--no-stream", name)
        if not entries:
            return None
        entry = entries[0]
        mem_used, mem_max = _parse_pair(entry.get("MemUsage", ""))
        net_read, net_write = _parse_pair(entry.get("NetIO", ""), binary=False)
        block_read, block_write = _parse_pair(entry.get("BlockIO", ""), binary=False)
        pids = entry.get("PIDs", "")
        return ContainerStats(
            cpu=_parse_percent(entry.get("CPUPerc", "")),
            mem_used=mem_used,
            mem_max=mem_max,
            mem_percent=_parse_percent(entry.get("MemPerc", "")),
            net_read=net_read,
            net_write=net_write,
            block_read=block_read,
            block_write=block_write,
            pids=int(pids) if str(pids).isdigit() else None,
        )

    # -- Images --

    async def list_images(self) -> List[ImageInfo]:
        return [
            ImageInfo(repository=entry["Repository"], tag=entry.get("Tag", ""), id=entry.get("ID", ""))
            for entry in await self._json_lines("image", "ls", "--no-trunc")
            if entry.get("Repository") and entry.get("Repository") != "<none>"
        ]

    async def pull_image(self, image: str) -> None:
        logger.info(f"Pulling image {image}")
        await self._docker("pull", image)

    async def tag_image(self, image: str, new_reference: str) -> None:
        await self._docker("tag", image, new_reference)

    async def remove_image(self, image: str) -> None:
        logger.info(f"Removing image {image}")
        await self._docker("image", "rm", image)

    # -- Networks and volumes --

    async def list_networks(self) -> List[NetworkInfo]:
        return [
            NetworkInfo(name=entry["Name"], id=entry.get("ID", ""), driver=entry.get("Driver", ""))
            for entry in await self._json_lines("network", "ls")
        ]

    async def create_network(self, name: str, driver: str = "bridge") -> None:
        logger.info(f"Creating network {name}")
        await self._docker("network", "create", "--driver", driver, name)
        await self._verify_network(name, present=True)

    async def remove_network(self, name: str) -> None:
        logger.info(f"Removing network {name}")
        await self._docker("network", "rm", name)
        await self._verify_network(name, present=False)

    async def list_volumes(self) -> List[VolumeInfo]:
        return [
            VolumeInfo(
                name=entry["Name"],
                driver=entry.get("Driver", "local"),
                mountpoint=entry.get("Mountpoint", ""),
            )
            for entry in await self._json_lines("volume", "ls")
        ]

    async def create_volume(self, name: str) -> None:
        logger.info(f"Creating volume {name}")
        await self._docker("volume", "create", name)
        await self._verify_volume(name, present=True)

    async def remove_volume(self, name: str) -> None:
        logger.info(f"Removing volume {name}")
        await self._docker("volume", "rm", name)
        await self._verify_volume(name, present=False)

    async def copy_to_volume(self, volume: str, source_path: str) -> None:
        """Copy a directory's contents into a volume through a helper container."""
        source = Path(source_path)
        if not source.exists():
            raise ContainerRuntimeError(f"Copy source {source_path} does not exist")

        if await self.find_image(self.helper_image) is None:
            await self.pull_image(self.helper_image)

        helper = f"berth_copy_{uuid.uuid4().hex[:12]}"
        logger.info(f"Copying {source_path} into volume {volume}")
        await self._docker("create", "--name", helper, "-v", f"{volume}:/data", self.helper_image)
        try:
            copy_from = f"{source}/." if source.is_dir() else str(source)
            await self._docker("cp", copy_from, f"{helper}:/data/")
        finally:
            await self._docker("rm", "-f", helper, check=False)
