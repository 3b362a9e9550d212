"""Prompt template node: pairs a system instruction with incoming text."""

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
)


def _coerce_text(value: Any) -> str:
    if isinstance(value, list):
        return "\n\n".join(str(v).strip() for v in value if isinstance(v, str) and v.strip())
    return value.strip() if isinstance(value, str) else ""


async def _execute(config: dict[str, Any], inputs: dict[str, Any], context: NodeContext) -> NodeResult:
    system_prompt = _coerce_text(config.get("template"))
    text = _coerce_text(inputs.get("text"))
    if not system_prompt or not text:
        raise NodeExecutionError(
            "Prompt template requires both a system prompt template result and a text input",
            node_id=context.node_id,
        )
    return NodeResult(
        outputs={
            "prompt": {
                "systemPrompt": system_prompt,
                "userMessage": text,
                "prompt": text,
                "text": text,
            }
        }
    )


PROMPT_TEMPLATE_NODE = NodeDefinition(
    kind="studio.prompt_template",
    version="1.0.0",
    title="Prompt Template",
    execute=_execute,
    input_ports=(PortSpec("text", PortType.TEXT, required=True),),
    output_ports=(PortSpec("prompt", PortType.JSON),),
    config_schema=ConfigSchema(
        fields=(ConfigFieldSpec("template", "System prompt", ConfigFieldType.TEXTAREA, required=True),),
    ),
    config_defaults={"template": ""},
)
