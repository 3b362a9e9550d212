"""Literal nodes: fixed text and typed values."""

import json
from typing import Any

from nodestudio.errors import NodeExecutionError
from nodestudio.graph.node import (
    ConfigFieldSpec,
    ConfigFieldType,
    ConfigSchema,
    NodeContext,
    NodeDefinition,
    NodeResult,
    PortSpec,
    PortType,
    SelectOption,
)


async def _execute_text(config: dict[str, Any], inputs: dict[str, Any], context: NodeContext) -> NodeResult:
    # A connected text input takes precedence over the stored value
    incoming = inputs.get("text")
    if isinstance(incoming, list):
        incoming = "\n\n".join(str(part) for part in incoming if part is not None)
    if isinstance(incoming, str):
        return NodeResult(outputs={"text": incoming})
    return NodeResult(outputs={"text": str(config.get("value") or "")})


TEXT_NODE = NodeDefinition(
    kind="studio.text",
    version="1.0.0",
    title="Text",
    execute=_execute_text,
    input_ports=(PortSpec("text", PortType.TEXT),),
    output_ports=(PortSpec("text", PortType.TEXT),),
    config_schema=ConfigSchema(
        fields=(ConfigFieldSpec("value", "Text", ConfigFieldType.TEXTAREA),),
        allow_unknown_keys=True,
    ),
    config_defaults={"value": ""},
)


def parse_value(raw: Any, value_type: str) -> Any:
    """Convert the stored textual value into the declared type."""
    if value_type == "text":
        return "" if raw is None else str(raw)
    text = str(raw if raw is not None else "").strip()
    if value_type == "number":
        try:
            number = float(text)
        except ValueError as e:
            raise NodeExecutionError(f"'{text}' is not a number") from e
        return int(number) if number.is_integer() else number
    if value_type == "boolean":
        lowered = text.lower()
        if lowered in ("true", "1", "yes"):
            return True
        if lowered in ("false", "0", "no", ""):
            return False
        raise NodeExecutionError(f"'{text}' is not a boolean")
    try:
        return json.loads(text) if text else None
    except json.JSONDecodeError as e:
        raise NodeExecutionError(f"Invalid JSON value: {e}") from e


async def _execute_value(config: dict[str, Any], inputs: dict[str, Any], context: NodeContext) -> NodeResult:
    return NodeResult(outputs={"value": parse_value(config.get("value"), config.get("valueType", "text"))})


VALUE_NODE = NodeDefinition(
    kind="studio.value",
    version="1.0.0",
    title="Value",
    execute=_execute_value,
    output_ports=(PortSpec("value", PortType.ANY),),
    config_schema=ConfigSchema(
        fields=(
            ConfigFieldSpec(
                "valueType",
                "Type",
                ConfigFieldType.SELECT,
                required=True,
                options=(
                    SelectOption("text", "Text"),
                    SelectOption("number", "Number"),
                    SelectOption("boolean", "Boolean"),
                    SelectOption("json", "JSON"),
                ),
            ),
            ConfigFieldSpec("value", "Value", ConfigFieldType.TEXTAREA),
        ),
    ),
    config_defaults={"valueType": "text", "value": ""},
)
