"""Reconstruction of container configs from runtime inspect data."""

import logging
import re
from typing import Any, Dict, List, Optional

from berth.models.container import ContainerConfig
from berth.utils.structures import prune_empty
from berth.utils.units import parse_size


logger = logging.getLogger(__name__)


_ANONYMOUS_VOLUME = re.compile(r"^[0-9a-f]{64}$")
_NANO = 1_000_000_000


def _split_pair(entry: str, separator: str = "=") -> tuple:
    key, _, value = entry.partition(separator)
    return key, value


def _ports(host_config: Dict[str, Any]) -> List[Dict[str, Any]]:
    ports = []
    for key, bindings in (host_config.get("PortBindings") or {}).items():
        container_port, _, protocol = key.partition("/")
        for binding in bindings or [{}]:
            host_port = (binding or {}).get("HostPort") or None
            ports.append({
                "container_port": int(container_port),
                "host_port": int(host_port) if host_port else None,
                "host_ip": (binding or {}).get("HostIp") or None,
                "protocol": protocol or "tcp",
            })
    return ports


def _mounts(inspect: Dict[str, Any]) -> List[Dict[str, Any]]:
    mounts = []
    for mount in inspect.get("Mounts") or []:
        mount_type = mount.get("Type", "volume")
        if mount_type == "volume":
            name = mount.get("Name") or ""
            if not name or _ANONYMOUS_VOLUME.match(name):
                continue
            source = name
        else:
            source = mount.get("Source")
        mounts.append({
            "type": mount_type,
            "source": source,
            "target": mount.get("Destination"),
            "read_only": not mount.get("RW", True),
        })
    return mounts


def _tmpfs(host_config: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Parse ``HostConfig.Tmpfs`` (target to ``size=..,mode=..`` options)."""
    entries = []
    for target, options in (host_config.get("Tmpfs") or {}).items():
        entry: Dict[str, Any] = {"target": target}
        for option in (options or "").split(","):
            key, value = _split_pair(option.strip())
            if key == "size":
                entry["size"] = parse_size(value)
            elif key == "mode" and value.isdigit():
                entry["mode"] = int(value)
        entries.append(entry)
    return entries


def _healthcheck(check: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not check:
        return None

    def to_ms(value):
        return int(value / 1_000_000) if value else None

    return {
        "test": check.get("Test"),
        "interval": to_ms(check.get("Interval")),
        "timeout": to_ms(check.get("Timeout")),
        "start_period": to_ms(check.get("StartPeriod")),
        "retries": check.get("Retries") or None,
    }


def _security(host_config: Dict[str, Any]) -> Dict[str, Any]:
    security: Dict[str, Any] = {
        "privileged": host_config.get("Privileged"),
        "cap_add": host_config.get("CapAdd"),
        "cap_drop": host_config.get("CapDrop"),
        "userns_mode": host_config.get("UsernsMode"),
        "ipc": host_config.get("IpcMode"),
        "pid": host_config.get("PidMode"),
    }
    other = []
    for option in host_config.get("SecurityOpt") or []:
        key, value = _split_pair(option.replace(":", "=", 1))
        if key == "apparmor":
            security["apparmor"] = value
        elif key == "seccomp":
            security["seccomp"] = value
        elif key == "no-new-privileges":
            security["no_new_privileges"] = (value or "true").lower() == "true"
        else:
            other.append(option)
    security["security_opt"] = other
    return security


def _networks(inspect: Dict[str, Any]) -> List[Dict[str, Any]]:
    # The engine adds the container name and short id as implicit aliases.
    implicit = {(inspect.get("Name") or "").lstrip("/"), (inspect.get("Id") or "")[:12]}
    networks = []
    settings = (inspect.get("NetworkSettings") or {}).get("Networks") or {}
    for name, endpoint in settings.items():
        endpoint = endpoint or {}
        ipam = endpoint.get("IPAMConfig") or {}
        networks.append({
            "name": name,
            "aliases": [a for a in endpoint.get("Aliases") or [] if a not in implicit],
            "ipv4_address": ipam.get("IPv4Address"),
            "ipv6_address": ipam.get("IPv6Address"),
        })
    return networks


def inspect_to_config(inspect: Dict[str, Any]) -> ContainerConfig:
    """Build the observed config from ``docker inspect`` output.

    Anonymous volumes are left out since no desired config can name them.
    """
    config = inspect.get("Config") or {}
    host_config = inspect.get("HostConfig") or {}

    restart = host_config.get("RestartPolicy") or {}
    log_config = host_config.get("LogConfig") or {}
    network_mode = host_config.get("NetworkMode")
    if network_mode == "default":
        network_mode = "bridge"

    data: Dict[str, Any] = {
        "name": (inspect.get("Name") or "").lstrip("/"),
        "image": config.get("Image"),
        "command": config.get("Cmd"),
        "entrypoint": config.get("Entrypoint"),
        "user": config.get("User"),
        "workdir": config.get("WorkingDir"),
        "hostname": config.get("Hostname"),
        "domainname": config.get("Domainname"),
        "environment": dict(_split_pair(entry) for entry in config.get("Env") or []),
        "labels": config.get("Labels"),
        "tty": config.get("Tty"),
        "stdin_open": config.get("OpenStdin"),
        "ports": _ports(host_config),
        "mounts": _mounts(inspect),
        "volumes": sorted((config.get("Volumes") or {}).keys()),
        "tmpfs": _tmpfs(host_config),
        "devices": [
            {
                "host_path": device.get("PathOnHost"),
                "container_path": device.get("PathInContainer"),
                "permissions": device.get("CgroupPermissions"),
            }
            for device in host_config.get("Devices") or []
        ],
        "extra_hosts": host_config.get("ExtraHosts"),
        "dns": {
            "servers": host_config.get("Dns"),
            "search": host_config.get("DnsSearch"),
            "options": host_config.get("DnsOptions"),
        },
        "networks": _networks(inspect),
        "network_mode": network_mode,
        "healthcheck": _healthcheck(config.get("Healthcheck")),
        "restart": {
            "policy": restart.get("Name") or "no",
            "max_retries": restart.get("MaximumRetryCount"),
        },
        "logging": {
            "driver": log_config.get("Type"),
            "options": log_config.get("Config"),
        },
        "security": _security(host_config),
        "sysctls": host_config.get("Sysctls"),
        "stop": {
            "signal": config.get("StopSignal"),
            "grace_period_sec": config.get("StopTimeout"),
        },
        "resources": {
            "cpus": host_config["NanoCpus"] / _NANO if host_config.get("NanoCpus") else None,
            "memory": host_config.get("Memory") or None,
            "memory_reservation": host_config.get("MemoryReservation") or None,
            "cpu_shares": host_config.get("CpuShares") or None,
            "shm_size": host_config.get("ShmSize") or None,
        },
        "read_only": host_config.get("ReadonlyRootfs"),
    }

    return ContainerConfig.model_validate(prune_empty(data, drop_empty_strings=True))
