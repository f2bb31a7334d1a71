"""Canonical forms and drift detection for container configs."""

import copy
import re
import shlex
from numbers import Number
from typing import Any, Dict, List, Union

from berth.models.container import OWNER_PREFIX, ContainerConfig, strip_owner_fields
from berth.utils.structures import prune_empty


# Values the runtime applies when a field is not set.
RUNTIME_DEFAULTS: Dict[str, Any] = {
    "tty": False,
    "stdin_open": False,
    "read_only": False,
    "user": "",
    "workdir": "",
    "domainname": "",
    "network_mode": "bridge",
}

# Keys that never trigger a recreation.
IGNORED_KEYS = frozenset({"hostname", "depends_on", "devices"})

# Inputs that inspect data cannot reproduce.
UNOBSERVABLE_KEYS = frozenset({"build", "env_file", "expose"})

_VOLUME_DATA_PATH = re.compile(r"/volumes/([^/]+)/_data/?$")
_MISSING = object()


def is_ignored(key: str) -> bool:
    return key.startswith(OWNER_PREFIX) or key in IGNORED_KEYS or key in UNOBSERVABLE_KEYS


def _canonical_command(value: Union[str, List[str]]) -> Union[str, List[str]]:
    if isinstance(value, str):
        try:
            parts = shlex.split(value)
        except ValueError:
            parts = value.split()
    else:
        parts = list(value)
    if len(parts) == 1 and not re.search(r"\s", parts[0]):
        return parts[0]
    return parts


def _canonical_mount(mount: Dict[str, Any]) -> Dict[str, Any]:
    mount = {k: v for k, v in mount.items() if k != "read_only"}
    source = mount.get("source")
    if isinstance(source, str):
        match = _VOLUME_DATA_PATH.search(source)
        if match:
            mount["source"] = match.group(1)
    return mount


def _canonical_healthcheck(check: Dict[str, Any]) -> Dict[str, Any]:
    test = check.get("test")
    if isinstance(test, str):
        check["test"] = ["CMD-SHELL", test]
    elif isinstance(test, list) and test and test[0] != "NONE":
        # Exec and shell forms compare equal since the CLI can only set the latter.
        if test[0] == "CMD-SHELL":
            check["test"] = ["CMD-SHELL", " ".join(test[1:])]
        else:
            check["test"] = ["CMD-SHELL", shlex.join(test[1:] if test[0] == "CMD" else test)]
    return check


def canonicalize(config: Union[ContainerConfig, Dict[str, Any]]) -> Dict[str, Any]:
    """Produce the canonical comparison form of a config.

    The input is never modified.
    """
    if isinstance(config, ContainerConfig):
        data = config.model_dump(exclude_none=True)
    else:
        data = copy.deepcopy(config)

    data = prune_empty(strip_owner_fields(data), drop_empty_strings=True)

    for key in IGNORED_KEYS | UNOBSERVABLE_KEYS:
        data.pop(key, None)
    for key, default in RUNTIME_DEFAULTS.items():
        if key in data and data[key] == default:
            del data[key]

    for key in ("command", "entrypoint"):
        if key in data:
            data[key] = _canonical_command(data[key])

    if "mounts" in data:
        data["mounts"] = sorted(
            (_canonical_mount(mount) for mount in data["mounts"]),
            key=lambda mount: mount.get("target", ""),
        )
    if "ports" in data:
        ports = []
        for port in data["ports"]:
            port = dict(port)
            if port.get("protocol") == "tcp":
                del port["protocol"]
            ports.append(port)
        data["ports"] = sorted(ports, key=lambda p: (
            p.get("host_port") or 0, p.get("container_port") or 0, p.get("host_ip") or "",
        ))
    if "tmpfs" in data:
        data["tmpfs"] = sorted(data["tmpfs"], key=lambda t: t.get("target", ""))
    if "volumes" in data:
        data["volumes"] = sorted(data["volumes"])
    if "networks" in data:
        data["networks"] = sorted(data["networks"], key=lambda n: n.get("name", ""))
    for key in ("environment", "labels", "sysctls"):
        if key in data:
            data[key] = {k: data[key][k] for k in sorted(data[key])}
    if "healthcheck" in data:
        data["healthcheck"] = _canonical_healthcheck(data["healthcheck"])

    return data


def _numeric(value: Any) -> Any:
    if isinstance(value, bool):
        return _MISSING
    if isinstance(value, Number):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return _MISSING
    return _MISSING


def _scalar_equal(desired: Any, observed: Any) -> bool:
    if desired == observed and type(desired) is type(observed):
        return True
    if isinstance(desired, bool) or isinstance(observed, bool):
        return str(desired).lower() == str(observed).lower()
    left, right = _numeric(desired), _numeric(observed)
    if left is not _MISSING and right is not _MISSING:
        return left == right
    return desired == observed


def values_equal(desired: Any, observed: Any) -> bool:
    """Compare two canonical values, looking only at keys the desired side has."""
    if isinstance(desired, dict):
        if not isinstance(observed, dict):
            return False
        return all(
            values_equal(value, observed.get(key, _MISSING))
            for key, value in desired.items()
            if not is_ignored(key)
        )
    if isinstance(desired, list):
        if not isinstance(observed, list) or len(desired) != len(observed):
            return False
        return all(values_equal(a, b) for a, b in zip(desired, observed))
    if observed is _MISSING:
        return False
    return _scalar_equal(desired, observed)


def diff_configs(
    desired: Union[ContainerConfig, Dict[str, Any]],
    observed: Union[ContainerConfig, Dict[str, Any]],
) -> List[str]:
    """List the field paths where ``observed`` does not match ``desired``.

    Both sides are canonicalized first. Only keys present in the desired
    config are compared, so extra observed fields never show up.
    """
    desired = canonicalize(desired)
    observed = canonicalize(observed)

    differences = []
    for key, value in desired.items():
        if is_ignored(key):
            continue
        other = observed.get(key, _MISSING)
        if isinstance(value, list):
            if not isinstance(other, list) or len(value) != len(other):
                differences.append(key)
                continue
            for index, (item, other_item) in enumerate(zip(value, other)):
                if not values_equal(item, other_item):
                    differences.append(f"{key}[{index}]")
        elif isinstance(value, dict):
            other = other if isinstance(other, dict) else {}
            for sub_key, sub_value in value.items():
                if is_ignored(sub_key):
                    continue
                if not values_equal(sub_value, other.get(sub_key, _MISSING)):
                    differences.append(f"{key}.{sub_key}")
        elif not values_equal(value, other):
            differences.append(key)

    return differences
