"""Config validation for node instances.

Validates a node's config record against the schema declared by its
definition. Validation runs over the merged record (declared defaults
overlaid with instance values) and reports every violated field rather
than stopping at the first one.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any

from nodestudio.graph.node import (
    TEXT_LIKE_FIELD_TYPES,
    ConfigFieldSpec,
    ConfigFieldType,
    NodeDefinition,
)

logger = logging.getLogger(__name__)

_KNOWN_FIELD_TYPES = frozenset(t.value for t in ConfigFieldType)


@dataclass
class ConfigValidationIssue:
    field_key: str
    message: str

    def __str__(self) -> str:
        return f"{self.field_key}: {self.message}"


@dataclass
class ValidationResult:
    """Result of validating one node config."""

    errors: list[ConfigValidationIssue] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(str(e) for e in self.errors) if self.errors else ""


def merge_with_defaults(definition: NodeDefinition, config: dict[str, Any] | None) -> dict[str, Any]:
    """Overlay instance values on the declared defaults."""
    return {**definition.config_defaults, **(config or {})}


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _is_visible(spec: ConfigFieldSpec, merged: dict[str, Any]) -> bool:
    if spec.visible_when is None:
        return True
    return merged.get(spec.visible_when.key) == spec.visible_when.equals


def parse_number(value: Any) -> float | None:
    """Finite number from a config value (numbers and numeric strings), else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def _check_field(spec: ConfigFieldSpec, value: Any) -> str | None:
    """Return an error message for a present value, or None when it is acceptable."""
    field_type = spec.type

    if field_type in TEXT_LIKE_FIELD_TYPES:
        if not isinstance(value, str):
            return "must be a string"
        return None

    if field_type == ConfigFieldType.SELECT:
        if not isinstance(value, str):
            return "must be a string"
        if spec.options:
            allowed = [option.value for option in spec.options]
            if value not in allowed:
                return f"must be one of: {', '.join(allowed)}"
        return None

    if field_type == ConfigFieldType.NUMBER:
        number = parse_number(value)
        if number is None:
            return "must be a finite number"
        if spec.integer and not number.is_integer():
            return "must be a whole number"
        if spec.min is not None and number < spec.min:
            return f"must be >= {spec.min:g}"
        if spec.max is not None and number > spec.max:
            return f"must be <= {spec.max:g}"
        return None

    if field_type == ConfigFieldType.BOOLEAN:
        return None if isinstance(value, bool) else "must be true or false"

    if field_type == ConfigFieldType.JSON_OBJECT:
        return None if isinstance(value, dict) else "must be a JSON object"

    # string_list
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        return "must be a list of strings"
    return None


def validate(definition: NodeDefinition, config: dict[str, Any] | None) -> ValidationResult:
    """
    Validate ``config`` (merged with defaults) against the definition's schema.

    Fields hidden by a ``visible_when`` rule are skipped. Keys the schema
    does not declare are never reported.
    """
    merged = merge_with_defaults(definition, config)
    result = ValidationResult()

    for spec in definition.config_schema.fields:
        if spec.type not in _KNOWN_FIELD_TYPES:
            result.errors.append(ConfigValidationIssue(spec.key, f"unsupported field type '{spec.type}'"))
            continue
        if not _is_visible(spec, merged):
            continue

        value = merged.get(spec.key)
        if value is None or (spec.type in TEXT_LIKE_FIELD_TYPES and _is_blank(value)):
            if spec.required:
                result.errors.append(ConfigValidationIssue(spec.key, f"{spec.label} is required"))
            continue
        if not spec.required and _is_blank(value):
            # optional input left empty
            continue

        message = _check_field(spec, value)
        if message:
            result.errors.append(ConfigValidationIssue(spec.key, f"{spec.label} {message}"))

    return result


def get_unknown_keys(definition: NodeDefinition, config: dict[str, Any] | None) -> dict[str, Any]:
    """Return the entries of ``config`` whose keys the schema does not declare."""
    known = definition.config_schema.keys
    return {key: value for key, value in (config or {}).items() if key not in known}


def rebuild_with_unknown_keys(
    definition: NodeDefinition,
    config: dict[str, Any] | None,
    unknown: dict[str, Any] | None,
) -> dict[str, Any]:
    """
    Rebuild a config record from its known values plus a set of unknown entries.

    Unknown entries are carried over verbatim only when the schema allows
    unknown keys; a declared key always wins over a same-named unknown entry.
    """
    known = definition.config_schema.keys
    rebuilt: dict[str, Any] = {}
    if definition.config_schema.allow_unknown_keys:
        for key, value in (unknown or {}).items():
            if key not in known:
                rebuilt[key] = value
    elif unknown:
        logger.debug(f"Dropping {len(unknown)} unknown config keys for {definition.kind}")
    for key, value in (config or {}).items():
        if key in known:
            rebuilt[key] = value
    return rebuilt
