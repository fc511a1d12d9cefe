"""
Runtime placeholders embedded in instruction arguments.

Some values only exist once the executor has applied earlier instructions,
so the interpreter hands scripts placeholder strings which the executor
substitutes right before applying an instruction:

- `{{ip:<service_id>}}`: a service's IP address, known once it is registered
- `{{value:<key>.<field>}}`: a field of a stored request response, where
  field is `code`, `body` or `extract.<name>`

Placeholders may appear anywhere inside strings, lists, tuples and dict
values.
"""

import re
from typing import Any, Callable

# Reference pattern for {{ip:<service_id>}} placeholders
IP_PLACEHOLDER_PATTERN = re.compile(r"\{\{ip:([^{}]+)\}\}")

# Reference pattern for {{value:<key>.<field>}} placeholders
VALUE_PLACEHOLDER_PATTERN = re.compile(r"\{\{value:([^{}.]+)\.([^{}]+)\}\}")

STATUS_CODE_FIELD = "code"
BODY_FIELD = "body"
EXTRACT_PREFIX = "extract."


def ip_placeholder(service_id: str) -> str:
    """Return the placeholder standing for a service's IP address."""
    return "{{ip:" + service_id + "}}"


def value_placeholder(key: str, field: str) -> str:
    """Return the placeholder standing for one field of a stored response."""
    return "{{value:" + key + "." + field + "}}"


def _find(value: Any, pattern: re.Pattern) -> list[tuple[str, ...]]:
    found: list[tuple[str, ...]] = []

    def _walk(item: Any) -> None:
        if isinstance(item, str):
            for match in pattern.finditer(item):
                if match.groups() not in found:
                    found.append(match.groups())
        elif isinstance(item, dict):
            for v in item.values():
                _walk(v)
        elif isinstance(item, (list, tuple)):
            for v in item:
                _walk(v)

    _walk(value)
    return found


def _substitute(value: Any, pattern: re.Pattern, replace: Callable[[re.Match], str]) -> Any:
    if isinstance(value, str):
        return pattern.sub(replace, value)
    elif isinstance(value, dict):
        return {k: _substitute(v, pattern, replace) for k, v in value.items()}
    elif isinstance(value, tuple):
        return tuple(_substitute(v, pattern, replace) for v in value)
    elif isinstance(value, list):
        return [_substitute(v, pattern, replace) for v in value]
    else:
        return value


def referenced_services(value: Any) -> list[str]:
    """
    List the service IDs whose IP placeholders appear in a value.

    Returns:
        Service IDs in order of first appearance, without duplicates
    """
    return [groups[0] for groups in _find(value, IP_PLACEHOLDER_PATTERN)]


def referenced_values(value: Any) -> list[tuple[str, str]]:
    """List the (key, field) pairs of the value placeholders in a value, without duplicates."""
    return [(key, field) for key, field in _find(value, VALUE_PLACEHOLDER_PATTERN)]


def resolve_ip_placeholders(value: Any, lookup_ip: Callable[[str], str]) -> Any:
    """
    Replace every IP placeholder in a value.

    Args:
        value: String, list, tuple or dict possibly containing placeholders
        lookup_ip: Returns the IP address of a service ID; raises if unknown

    Returns:
        The value with placeholders substituted (same container types)
    """
    return _substitute(value, IP_PLACEHOLDER_PATTERN, lambda m: lookup_ip(m.group(1)))


def resolve_value_placeholders(value: Any, lookup_value: Callable[[str, str], str]) -> Any:
    """Replace every value placeholder; lookup_value(key, field) raises if unknown."""
    return _substitute(
        value, VALUE_PLACEHOLDER_PATTERN, lambda m: lookup_value(m.group(1), m.group(2))
    )
