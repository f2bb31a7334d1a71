"""Placeholder substitution for manifests.

Three placeholder syntaxes are recognised, and each is resolved completely
before the next one is tried:

1. ``{{path}}``: a dotted lookup into the configuration tree (a leading
   ``config.`` is optional), falling back to the auxiliary variables.
2. ``${config.path:-default}`` or ``${config_path:-default}``: a configuration
   lookup with an optional default. The underscore form is the dotted form
   spelled for environments that cannot use dots.
3. ``${name:-default}``: an auxiliary variable with an optional default.

When a placeholder covers the whole string, the located value is returned with
its own type, so ``"{{enabled}}"`` can produce ``False`` rather than
``"false"``. Otherwise the value is stringified and spliced in; defaults are
spliced as written.
"""

import json
import logging
import re
from typing import Any, Dict, Mapping, Optional

from berth.errors import TemplateError


logger = logging.getLogger(__name__)


CONFIG_PLACEHOLDER = re.compile(r"{{(.*?)}}")
CONFIG_DEFAULT_PLACEHOLDER = re.compile(
    r"\$\{(config(?:[._][.a-zA-Z0-9_]+)+)(:-([^}]*))?}"
)
VARIABLE_PLACEHOLDER = re.compile(r"\$\{(\w+)(:-([^}]*))?}")

_NUMBER = re.compile(r"^[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?$")
_MISSING = object()

MAX_SUBSTITUTIONS = 1000


def to_string(value: Any) -> str:
    """Stringify a resolved value for splicing into a larger string."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def coerce_default(value: str) -> Any:
    """Apply the default-value typing rule.

    ``"true"``/``"false"`` become booleans, numeric-looking strings become
    numbers and everything else stays a string.
    """
    if value == "true":
        return True
    if value == "false":
        return False
    if _NUMBER.match(value):
        try:
            return int(value)
        except ValueError:
            return float(value)
    return value


def lookup_path(tree: Any, path: str) -> Any:
    """Walk a dotted path through nested mappings and sequences."""
    if not path:
        return _MISSING

    current = tree
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _strip_config_prefix(path: str) -> str:
    if path.startswith("config.") or path.startswith("config_"):
        return path[len("config."):]
    return path


def _unresolved(placeholder: str, strict: bool) -> str:
    if strict:
        raise TemplateError(f"Unresolved placeholder: {placeholder}")
    logger.debug(f"Placeholder {placeholder} has no value, replacing with empty string")
    return ""


def _substitute(field: str, pattern: re.Pattern, resolve) -> Any:
    """Replace every match of ``pattern``, always searching from the start.

    ``resolve(match, whole)`` returns the value for a match, where ``whole``
    tells whether the match covers the entire string. A whole-string match
    short-circuits with the typed value. Spliced text is scanned again, so a
    value that itself holds a placeholder of the same syntax is resolved too.
    """
    for _ in range(MAX_SUBSTITUTIONS):
        match = pattern.search(field)
        if not match:
            return field

        whole = match.start() == 0 and match.end() == len(field)
        value = resolve(match, whole)
        if whole:
            return value

        field = field[:match.start()] + to_string(value) + field[match.end():]

    raise TemplateError(f"Too many substitutions, placeholders may be self-referencing: {field}")


def resolve_field(
    field: Any,
    config: Any,
    variables: Optional[Dict[str, Any]] = None,
    strict: bool = False,
) -> Any:
    """Resolve all placeholders in a single value.

    Non-string values are returned unchanged.
    """
    if not isinstance(field, str):
        return field
    variables = variables or {}

    def resolve_config(match: re.Match, whole: bool) -> Any:
        name = match.group(1).strip()
        value = lookup_path(config, _strip_config_prefix(name))
        if value is _MISSING and name in variables:
            value = variables[name]
        if value is _MISSING:
            return _unresolved(match.group(0), strict)
        return value

    def default_for(match: re.Match, whole: bool) -> Any:
        # Embedded defaults are spliced verbatim so "1.10" stays "1.10"
        if match.group(2) is None:
            return _unresolved(match.group(0), strict)
        return coerce_default(match.group(3)) if whole else match.group(3)

    def resolve_config_default(match: re.Match, whole: bool) -> Any:
        path = match.group(1)
        if "_" in path and "." not in path:
            path = path.replace("_", ".")
        value = lookup_path(config, _strip_config_prefix(path))
        if value is not _MISSING:
            return value
        return default_for(match, whole)

    def resolve_variable(match: re.Match, whole: bool) -> Any:
        name = match.group(1)
        if name in variables:
            return variables[name]
        return default_for(match, whole)

    for pattern, resolver in (
        (CONFIG_PLACEHOLDER, resolve_config),
        (CONFIG_DEFAULT_PLACEHOLDER, resolve_config_default),
        (VARIABLE_PLACEHOLDER, resolve_variable),
    ):
        field = _substitute(field, pattern, resolver)
        if not isinstance(field, str):
            return field

    return field


def resolve_templates(
    value: Any,
    config: Any,
    variables: Optional[Dict[str, Any]] = None,
    strict: bool = False,
) -> Any:
    """Resolve placeholders in every string leaf of a nested structure.

    Returns a new structure; mapping keys are left as they are.
    """
    if isinstance(value, Mapping):
        return {
            key: resolve_templates(item, config, variables, strict)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [resolve_templates(item, config, variables, strict) for item in value]
    return resolve_field(value, config, variables, strict)
