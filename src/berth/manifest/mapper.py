"""Lowering of normalized services into container configs."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import ValidationError

from berth.errors import MappingError
from berth.models.container import ContainerConfig
from berth.models.manifest import ComposeManifest, ComposeService, ComposeVolume
from berth.utils.structures import prune_empty
from berth.utils.units import duration_to_ms, parse_duration, parse_size


logger = logging.getLogger(__name__)


OWNER_LABELS = (
    "iobEnabled",
    "iobStopOnUnload",
    "iobAutoImageUpdate",
    "iobMonitoringEnabled",
    "iobWaitForReady",
    "iobBackup",
    "iobCopyVolumes",
)

_PATH_PREFIXES = ("/", "./", "../")


@dataclass
class OwnerDirectives:
    """Owner-control settings lifted out of a service's labels."""
    enabled: bool = True
    stop_on_unload: bool = True
    auto_image_update: bool = False
    monitoring_enabled: bool = False
    wait_for_ready: bool = False
    backup: List[str] = field(default_factory=list)
    copy_volumes: List[Tuple[str, str]] = field(default_factory=list)


def _split_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _label_map(labels: Union[Dict[str, str], List[str], None]) -> Dict[str, str]:
    if not labels:
        return {}
    if isinstance(labels, dict):
        return dict(labels)
    result = {}
    for entry in labels:
        key, _, value = entry.partition("=")
        result[key] = value
    return result


def extract_owner_directives(
    labels: Union[Dict[str, str], List[str], None],
) -> Tuple[OwnerDirectives, Dict[str, str]]:
    """Split reserved owner-control labels from runtime labels.

    Returns the parsed directives and the remaining labels, which are the
    ones attached to the real container.
    """
    remaining = _label_map(labels)
    reserved = {key: remaining.pop(key) for key in OWNER_LABELS if key in remaining}

    def flag(key: str, default: bool) -> bool:
        value = reserved.get(key)
        if value is None:
            return default
        value = str(value).strip().lower()
        if default:
            return value != "false"
        return value == "true"

    directives = OwnerDirectives(
        enabled=flag("iobEnabled", True),
        stop_on_unload=flag("iobStopOnUnload", True),
        auto_image_update=flag("iobAutoImageUpdate", False),
        monitoring_enabled=flag("iobMonitoringEnabled", False),
        wait_for_ready=flag("iobWaitForReady", False),
    )
    if reserved.get("iobBackup"):
        directives.backup = _split_list(reserved["iobBackup"])
    if reserved.get("iobCopyVolumes"):
        for pair in _split_list(reserved["iobCopyVolumes"]):
            source, sep, volume = pair.partition("=>")
            source = source.strip()
            volume = volume.strip() if sep else source
            if source and volume:
                directives.copy_volumes.append((source, volume))

    return directives, remaining


def _port_number(value: Any) -> Optional[int]:
    text = str(value).strip()
    return int(text) if text.isdigit() else None


def map_ports(ports: List[Any]) -> List[Dict[str, Any]]:
    """Parse port shorthand and long forms.

    ``[[host_ip:]host_port:]container_port[/proto]``. Entries with a
    non-numeric port are skipped.
    """
    result = []
    for entry in ports or []:
        if isinstance(entry, str):
            spec, _, protocol = entry.partition("/")
            parts = spec.split(":")
            if len(parts) == 1:
                host_ip, host_port, container_port = None, None, parts[0]
            elif len(parts) == 2:
                host_ip, (host_port, container_port) = None, parts
            elif len(parts) == 3:
                host_ip, host_port, container_port = parts
            else:
                logger.warning(f"Skipping unsupported port definition: {entry}")
                continue

            target = _port_number(container_port)
            published = _port_number(host_port) if host_port else None
            if target is None or (host_port and published is None):
                logger.warning(f"Skipping port with non-numeric value: {entry}")
                continue
            result.append({
                "container_port": target,
                "host_port": published,
                "host_ip": host_ip or None,
                "protocol": protocol or "tcp",
            })
        else:
            published = None
            if entry.published is not None:
                published = _port_number(entry.published)
                if published is None:
                    logger.warning(f"Skipping port with non-numeric published value: {entry.published}")
                    continue
            result.append({
                "container_port": entry.target,
                "host_port": published,
                "host_ip": entry.host_ip,
                "protocol": entry.protocol or "tcp",
            })
    return result


def _looks_like_path(source: str) -> bool:
    return source.startswith(_PATH_PREFIXES) or source in (".", "..")


def map_volumes(volumes: List[Any], service: str) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Split volume definitions into mounts and tmpfs entries."""
    mounts: List[Dict[str, Any]] = []
    tmpfs: List[Dict[str, Any]] = []

    for entry in volumes or []:
        if isinstance(entry, str):
            parts = entry.split(":")
            if len(parts) < 2:
                logger.debug(f"Service {service}: skipping anonymous volume {entry}")
                continue
            source, target = parts[0], parts[1]
            mode = parts[2] if len(parts) > 2 else ""
            mounts.append({
                "type": "bind" if _looks_like_path(source) else "volume",
                "source": source,
                "target": target,
                "read_only": True if "ro" in mode.split(",") else None,
            })
            continue

        if entry.type == "tmpfs":
            if not entry.target:
                raise MappingError(f"Service {service}: tmpfs mount without target")
            options = entry.tmpfs or {}
            tmpfs.append({
                "target": entry.target,
                "size": parse_size(options.get("size")),
                "mode": options.get("mode"),
            })
            continue

        mounts.append(_map_volume_object(entry, service))

    return mounts, tmpfs


def _map_volume_object(entry: ComposeVolume, service: str) -> Dict[str, Any]:
    if entry.source is not None and not isinstance(entry.source, str):
        raise MappingError(
            f"Service {service}: mount source must be a string, got {entry.source!r}"
        )
    if not entry.target:
        raise MappingError(f"Service {service}: mount without target")

    mount_type = entry.type
    if not mount_type:
        mount_type = "bind" if entry.source and _looks_like_path(entry.source) else "volume"
    return {
        "type": mount_type,
        "source": entry.source,
        "target": entry.target,
        "read_only": entry.read_only,
        "consistency": entry.consistency,
    }


def apply_mount_directives(
    mounts: List[Dict[str, Any]],
    directives: OwnerDirectives,
    base_dir: Optional[Path],
) -> None:
    """Flag mounts listed by the backup and copy-volume directives."""
    base = Path(base_dir) if base_dir else Path.cwd()
    for mount in mounts:
        source = mount.get("source")
        if not source:
            continue
        if source in directives.backup:
            mount["iob_backup"] = True
        for copy_from, volume in directives.copy_volumes:
            if volume == source:
                mount["iob_copy_volume"] = copy_from
                mount["iob_auto_copy_from"] = os.path.normpath(
                    copy_from if os.path.isabs(copy_from) else str(base / copy_from)
                )


def map_devices(devices: List[Any]) -> List[Dict[str, Any]]:
    result = []
    for entry in devices or []:
        if isinstance(entry, Mapping):
            host_path = entry.get("source") or entry.get("host_path")
            container_path = entry.get("target") or entry.get("container_path")
            permissions = entry.get("permissions")
        else:
            host_path, container_path, permissions = (str(entry).split(":") + [None, None])[:3]
        if host_path:
            result.append({
                "host_path": host_path,
                "container_path": container_path or None,
                "permissions": permissions or None,
            })
    return result


def map_extra_hosts(hosts: Union[List[str], Dict[str, str], None]) -> List[str]:
    if isinstance(hosts, dict):
        return [f"{host}:{ip}" for host, ip in hosts.items()]
    # Compose also accepts "host=ip"
    return [entry.replace("=", ":", 1) if "=" in entry else entry for entry in hosts or []]


def map_networks(networks: Union[List[str], Dict[str, Any], None]) -> List[Dict[str, Any]]:
    if isinstance(networks, dict):
        result = []
        for name, options in networks.items():
            options = options or {}
            result.append({
                "name": name,
                "aliases": options.get("aliases"),
                "ipv4_address": options.get("ipv4_address"),
                "ipv6_address": options.get("ipv6_address"),
            })
        return result
    return [{"name": name} for name in networks or []]


def map_healthcheck(service: ComposeService) -> Optional[Dict[str, Any]]:
    check = service.healthcheck
    if check is None:
        return None
    test = ["NONE"] if check.disable else check.test
    return {
        "test": test,
        "interval": duration_to_ms(check.interval),
        "timeout": duration_to_ms(check.timeout),
        "start_period": duration_to_ms(check.start_period),
        "retries": check.retries,
    }


def map_restart(restart: Optional[str]) -> Optional[Dict[str, Any]]:
    """Map ``no``, ``always``, ``unless-stopped`` and ``on-failure[:N]``."""
    if not restart:
        return None
    policy, _, retries = restart.partition(":")
    return {
        "policy": policy,
        "max_retries": int(retries) if retries.isdigit() else None,
    }


def map_security(service: ComposeService) -> Dict[str, Any]:
    security: Dict[str, Any] = {
        "privileged": service.privileged,
        "cap_add": service.cap_add,
        "cap_drop": service.cap_drop,
        "userns_mode": service.userns_mode,
        "ipc": service.ipc,
        "pid": service.pid,
    }
    other = []
    for option in service.security_opt or []:
        key, sep, value = option.replace(":", "=", 1).partition("=")
        if key == "apparmor" and sep:
            security["apparmor"] = value
        elif key == "seccomp" and sep:
            security["seccomp"] = value
        elif key == "no-new-privileges":
            security["no_new_privileges"] = (value or "true").lower() == "true"
        else:
            other.append(option)
    security["security_opt"] = other
    return security


def map_stop(service: ComposeService) -> Dict[str, Any]:
    grace = parse_duration(service.stop_grace_period)
    return {
        "signal": service.stop_signal,
        "grace_period_sec": int(grace) if grace is not None else None,
    }


def map_resources(service: ComposeService) -> Dict[str, Any]:
    """Collect limits from service-level keys and ``deploy.resources``."""
    deploy = (service.deploy or {}).get("resources") or {}
    limits = deploy.get("limits") or {}
    reservations = deploy.get("reservations") or {}

    cpus = service.cpus if service.cpus is not None else limits.get("cpus")
    memory = service.mem_limit if service.mem_limit is not None else limits.get("memory")
    reservation = (
        service.mem_reservation if service.mem_reservation is not None
        else reservations.get("memory")
    )
    return {
        "cpus": float(cpus) if cpus is not None else None,
        "memory": parse_size(memory),
        "memory_reservation": parse_size(reservation),
        "shm_size": parse_size(service.shm_size),
    }


def map_build(build: Any) -> Optional[Dict[str, Any]]:
    if build is None:
        return None
    if isinstance(build, str):
        return {"context": build}
    return build.model_dump(exclude_none=True)


def _command(value: Union[str, List[str], None]) -> Union[str, List[str], None]:
    if isinstance(value, list):
        return [str(part) for part in value]
    return value


def map_service(
    name: str,
    manifest: ComposeManifest,
    base_dir: Optional[Union[str, Path]] = None,
) -> ContainerConfig:
    """Lower one normalized service into a container config.

    Raises ``MappingError`` when the service cannot produce a valid config.
    """
    service = manifest.services.get(name)
    if service is None:
        raise MappingError(f"Service {name} not found in manifest")

    if service.image:
        image = service.image
    elif service.build is not None:
        image = f"{name}:latest"
    else:
        raise MappingError(f"Service {name} has neither image nor build")

    directives, labels = extract_owner_directives(service.labels)
    mounts, tmpfs = map_volumes(service.volumes, name)
    apply_mount_directives(mounts, directives, Path(base_dir) if base_dir else None)

    config: Dict[str, Any] = {
        "name": service.container_name or name,
        "image": image,
        "command": _command(service.command),
        "entrypoint": _command(service.entrypoint),
        "user": service.user,
        "workdir": service.working_dir,
        "hostname": service.hostname,
        "domainname": service.domainname,
        "environment": service.environment,
        "env_file": service.env_file,
        "labels": labels,
        "tty": service.tty,
        "stdin_open": service.stdin_open,
        "ports": map_ports(service.ports),
        "expose": service.expose,
        "mounts": mounts,
        "tmpfs": tmpfs,
        "devices": map_devices(service.devices),
        "extra_hosts": map_extra_hosts(service.extra_hosts),
        "dns": {
            "servers": service.dns,
            "search": service.dns_search,
            "options": service.dns_opt,
        },
        "networks": map_networks(service.networks),
        "network_mode": service.network_mode,
        "healthcheck": map_healthcheck(service),
        "restart": map_restart(service.restart),
        "logging": service.logging.model_dump(exclude_none=True) if service.logging else None,
        "security": map_security(service),
        "sysctls": service.sysctls,
        "depends_on": service.depends_on,
        "stop": map_stop(service),
        "resources": map_resources(service),
        "read_only": service.read_only,
        "build": map_build(service.build),
        "iob_enabled": directives.enabled,
        "iob_stop_on_unload": directives.stop_on_unload,
        "iob_auto_image_update": directives.auto_image_update,
        "iob_monitoring_enabled": directives.monitoring_enabled,
        "iob_wait_for_ready": directives.wait_for_ready,
    }

    try:
        return ContainerConfig.model_validate(prune_empty(config))
    except ValidationError as e:
        raise MappingError(f"Service {name}: invalid container config: {e}") from e


def map_to_configs(
    manifest: ComposeManifest,
    base_dir: Optional[Union[str, Path]] = None,
) -> List[ContainerConfig]:
    """Map every service of a manifest, in manifest order."""
    return [map_service(name, manifest, base_dir) for name in manifest.services]
