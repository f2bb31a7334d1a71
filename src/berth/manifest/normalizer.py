"""Normalization of loosely-typed Compose-style documents."""

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from berth.errors import ParseError
from berth.models.manifest import ComposeManifest
from berth.utils.structures import prune_empty
from berth.utils.templates import to_string


logger = logging.getLogger(__name__)


EXTENSION_PREFIX = "x-"

# Service keys copied through as-is when present.
_PASSTHROUGH_KEYS = (
    "image", "container_name", "command", "entrypoint", "user", "working_dir",
    "hostname", "domainname", "restart", "deploy", "network_mode", "ipc",
    "pid", "userns_mode", "cpus", "mem_limit", "mem_reservation", "shm_size",
)
_LIST_KEYS = (
    "env_file", "expose", "devices", "dns", "dns_search", "dns_opt",
    "security_opt", "cap_add", "cap_drop",
)
_BOOL_KEYS = ("tty", "stdin_open", "privileged", "read_only")
_VOLUME_FIELDS = (
    "type", "source", "target", "read_only", "consistency", "bind", "volume", "tmpfs",
)


def arrify(value: Any) -> List[Any]:
    """Wrap a scalar in a list; lists pass through."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _flag_string(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    return to_string(value)


def normalize_string_map(value: Any, stringify=to_string) -> Dict[str, str]:
    """Flatten a ``K=V`` list or a mapping into a unique-key string map.

    List entries without ``=`` map to an empty string. Later entries win.
    """
    result: Dict[str, str] = {}
    if isinstance(value, Mapping):
        for key, item in value.items():
            result[str(key)] = stringify(item)
    elif isinstance(value, (list, tuple)):
        for entry in value:
            key, sep, item = str(entry).partition("=")
            result[key] = item if sep else ""
    elif value is not None:
        raise ParseError(f"Expected a list or mapping, got {type(value).__name__}")
    return result


def normalize_labels(value: Any) -> Union[Dict[str, str], List[str], None]:
    """Normalize labels, keeping the list form when the source used it."""
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return [to_string(entry) for entry in value]
    return normalize_string_map(value)


def normalize_ports(value: Any, service: str) -> List[Any]:
    """Validate long-form ports; shorthand entries pass through as strings."""
    ports = []
    for entry in arrify(value):
        if isinstance(entry, Mapping):
            target = entry.get("target")
            if isinstance(target, bool) or not isinstance(target, (int, str)) \
                    or not str(target).isdigit():
                raise ParseError(
                    f"Service {service}: port target must be numeric, got {target!r}"
                )
            port = dict(entry)
            port["target"] = int(target)
            port.setdefault("protocol", "tcp")
            ports.append(port)
        else:
            ports.append(to_string(entry))
    return ports


def normalize_volumes(value: Any) -> List[Any]:
    """Copy long-form volume sub-fields only if present; strings pass through."""
    volumes = []
    for entry in arrify(value):
        if isinstance(entry, Mapping):
            volumes.append({key: entry[key] for key in _VOLUME_FIELDS if key in entry})
        else:
            volumes.append(to_string(entry))
    return volumes


def normalize_depends_on(value: Any) -> Any:
    if isinstance(value, str):
        return [value]
    return value


def normalize_healthcheck(value: Any) -> Optional[Dict[str, Any]]:
    """Build a healthcheck only when a ``test`` is declared."""
    if not isinstance(value, Mapping) or "test" not in value:
        return None

    test = value["test"]
    if isinstance(test, (list, tuple)):
        test = [to_string(part) for part in test]
    elif not isinstance(test, str):
        test = ["NONE"]

    healthcheck: Dict[str, Any] = {"test": test}
    for key in ("interval", "timeout", "start_period"):
        if value.get(key) is not None:
            healthcheck[key] = to_string(value[key])
    if value.get("retries") is not None:
        healthcheck["retries"] = value["retries"]
    if value.get("disable") is not None:
        healthcheck["disable"] = bool(value["disable"])
    return healthcheck


def normalize_build(value: Any) -> Any:
    """A string build is the context path; objects get string-valued maps."""
    if value is None or isinstance(value, str):
        return value
    if not isinstance(value, Mapping):
        raise ParseError(f"Invalid build definition: {value!r}")

    build = dict(value)
    if "args" in build:
        build["args"] = normalize_string_map(build["args"], stringify=_flag_string)
    if "labels" in build:
        build["labels"] = normalize_string_map(build["labels"])
    return build


def normalize_logging(value: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(value, Mapping):
        return None
    result = {}
    if value.get("driver") is not None:
        result["driver"] = to_string(value["driver"])
    if value.get("options") is not None:
        result["options"] = normalize_string_map(value["options"], stringify=_flag_string)
    return result


def normalize_service(name: str, raw: Any) -> Dict[str, Any]:
    """Normalize a single service definition."""
    if not isinstance(raw, Mapping):
        raise ParseError(f"Compose: service {name} must be an object")

    service: Dict[str, Any] = {}
    for key in _PASSTHROUGH_KEYS:
        if key in raw:
            service[key] = raw[key]
    for key in _LIST_KEYS:
        if key in raw:
            service[key] = [to_string(item) if not isinstance(item, Mapping) else item
                            for item in arrify(raw[key])]
    for key in _BOOL_KEYS:
        if key in raw:
            service[key] = bool(raw[key])

    if "network_mode" in service and isinstance(service["network_mode"], bool):
        service["network_mode"] = to_string(service["network_mode"])
    if "environment" in raw:
        service["environment"] = normalize_string_map(raw["environment"])
    if "labels" in raw:
        service["labels"] = normalize_labels(raw["labels"])
    if "sysctls" in raw:
        service["sysctls"] = normalize_string_map(raw["sysctls"])
    if "ports" in raw:
        service["ports"] = normalize_ports(raw["ports"], name)
    if "volumes" in raw:
        service["volumes"] = normalize_volumes(raw["volumes"])
    if "depends_on" in raw:
        service["depends_on"] = normalize_depends_on(raw["depends_on"])
    if "healthcheck" in raw:
        service["healthcheck"] = normalize_healthcheck(raw["healthcheck"])
    if "build" in raw:
        service["build"] = normalize_build(raw["build"])
    if "logging" in raw:
        service["logging"] = normalize_logging(raw["logging"])
    if "extra_hosts" in raw:
        hosts = raw["extra_hosts"]
        service["extra_hosts"] = (
            normalize_string_map(hosts) if isinstance(hosts, Mapping)
            else [to_string(host) for host in arrify(hosts)]
        )
    if "networks" in raw:
        networks = raw["networks"]
        service["networks"] = (
            {str(key): item for key, item in networks.items()}
            if isinstance(networks, Mapping) else [to_string(n) for n in arrify(networks)]
        )
    for key in ("stop_grace_period", "stop_signal"):
        if raw.get(key) is not None:
            service[key] = to_string(raw[key])

    service["extensions"] = {
        key: item for key, item in raw.items() if str(key).startswith(EXTENSION_PREFIX)
    }

    ignored = set(raw) - set(service) - set(service["extensions"])
    if ignored:
        logger.debug(f"Service {name}: ignoring unsupported keys {sorted(ignored)}")

    return service


def clean_service(service: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-clean a normalized service.

    Extensions are kept verbatim, and network maps keep their ``name: null``
    entries since the key alone is the attachment.
    """
    cleaned = prune_empty({
        key: item for key, item in service.items() if key not in ("extensions", "networks")
    })
    if service.get("networks"):
        cleaned["networks"] = service["networks"]
    cleaned["extensions"] = service.get("extensions", {})
    return cleaned


def parse_document(source: str) -> Any:
    """Parse YAML (or JSON, which is a YAML subset) text."""
    yaml = YAML(typ="safe", pure=True)
    try:
        return yaml.load(source)
    except YAMLError as e:
        raise ParseError(f"Compose: cannot parse input: {e}") from e


def load_manifest(source: Union[str, Mapping[str, Any]]) -> ComposeManifest:
    """Parse and normalize a manifest.

    ``source`` is raw YAML/JSON text or an already-parsed mapping. Raises
    ``ParseError`` when the document or any service has the wrong shape.
    """
    raw = parse_document(source) if isinstance(source, str) else source
    if not isinstance(raw, Mapping):
        raise ParseError("Compose: cannot parse input")

    services = raw.get("services")
    if services is None:
        raise ParseError("Compose: missing `services`")
    if not isinstance(services, Mapping):
        raise ParseError("Compose: `services` must be an object")

    document: Dict[str, Any] = {
        "version": to_string(raw.get("version") or "3.9"),
        "services": {
            str(name): clean_service(normalize_service(str(name), service))
            for name, service in services.items()
        },
        "extensions": {
            key: item for key, item in raw.items() if str(key).startswith(EXTENSION_PREFIX)
        },
    }
    # Top-level resources are opaque; entries such as `data: null` are meaningful.
    for key in ("networks", "volumes", "secrets", "configs"):
        if isinstance(raw.get(key), Mapping):
            document[key] = dict(raw[key])
    if raw.get("iobDockerApi") is not None:
        document["docker_api"] = raw["iobDockerApi"]

    try:
        manifest = ComposeManifest.model_validate(document)
    except ValidationError as e:
        raise ParseError(f"Compose: invalid manifest: {e}") from e

    logger.debug(f"Loaded manifest with services: {', '.join(manifest.services)}")
    return manifest
