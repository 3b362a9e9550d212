"""
Generation nodes: text and image jobs submitted to a GenerationProvider.

Both nodes submit one job, wait for it with the configured polling
schedule and map the finished job onto output ports. Image outputs are
downloaded and written to the project's asset store; the resulting list of
asset refs is what the managed-output reconciler mirrors into the graph.
"""

import logging
from typing import Any

import httpx

from nodestudio.config import StudioSettings
from nodestudio.errors import NodeExecutionError, StudioError, TransportError
from nodestudio.graph.config_validation import parse_number
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
from nodestudio.providers.generation import (
    GenerationJob,
    GenerationProvider,
    GenerationRequest,
    build_idempotency_key,
)

logger = logging.getLogger(__name__)

DEFAULT_TEXT_MODEL = "openai/gpt-5-mini"
DEFAULT_IMAGE_MODEL = "google/nano-banana-pro"
MAX_IMAGE_PROMPT_CHARS = 7_900
ASPECT_RATIOS = ("1:1", "16:9", "9:16", "4:3", "3:4")
IMAGE_PROMPT_INSTRUCTION = "Return a single image generation prompt, no commentary."


def _require_provider(context: NodeContext) -> GenerationProvider:
    if context.provider is None:
        raise NodeExecutionError("No generation provider configured", node_id=context.node_id)
    return context.provider


def structured_prompt(value: Any) -> tuple[str, str] | None:
    """(system_prompt, user_message) from a prompt-template payload, if it is one."""
    if not isinstance(value, dict):
        return None
    system_prompt = value.get("systemPrompt")
    user_message = value.get("userMessage")
    if isinstance(system_prompt, str) and system_prompt.strip() and isinstance(user_message, str) and user_message.strip():
        return system_prompt.strip(), user_message.strip()
    return None


def truncate_prompt(prompt: str, limit: int = MAX_IMAGE_PROMPT_CHARS) -> str:
    prompt = prompt.strip()
    if len(prompt) <= limit:
        return prompt
    return prompt[: limit - 3].rstrip() + "..."


async def run_job(
    context: NodeContext,
    request: GenerationRequest,
    kind: str,
) -> GenerationJob:
    """Submit ``request``, wait for it and return the finished job."""
    provider = _require_provider(context)
    settings = context.settings or StudioSettings()
    key = build_idempotency_key(kind, context.run_id, request.model, request)
    try:
        created = await provider.create_job(request, idempotency_key=key)
        logger.info(f"Submitted {kind} job {created.job.id} ({request.model})")
        job = created.job
        if not job.finished:
            job = await provider.wait_for_job(
                job.id,
                poll_interval_ms=settings.poll_interval_ms,
                max_poll_interval_ms=settings.max_poll_interval_ms,
                max_wait_ms=settings.max_wait_ms,
                signal=context.cancel_event,
            )
    except StudioError:
        raise
    except (httpx.HTTPError, OSError) as e:
        raise TransportError(f"Generation provider call failed: {e}", node_id=context.node_id) from e

    if job.status != "succeeded":
        raise TransportError(
            f"Generation job {job.id} {job.status}: {job.error or 'no detail'}",
            node_id=context.node_id,
        )
    return job


# ---------------------------------------------------------------------------
# Text generation
# ---------------------------------------------------------------------------


async def _execute_text(config: dict[str, Any], inputs: dict[str, Any], context: NodeContext) -> NodeResult:
    locked = config.get("value")
    if config.get("lockOutput") and isinstance(locked, str) and locked.strip():
        return NodeResult(outputs={"text": locked})

    prompt = structured_prompt(inputs.get("prompt"))
    if prompt is None:
        raise NodeExecutionError(
            "Text generation requires prompt input with both systemPrompt and userMessage",
            node_id=context.node_id,
        )
    system_prompt, user_message = prompt
    model = str(config.get("modelId") or DEFAULT_TEXT_MODEL)
    request = GenerationRequest(kind="text", model=model, prompt=user_message, system_prompt=system_prompt)
    job = await run_job(context, request, "text")
    text = next((o.text for o in job.outputs if o.text), None)
    if text is None:
        raise TransportError(f"Generation job {job.id} returned no text", node_id=context.node_id)
    return NodeResult(outputs={"text": text})


TEXT_GENERATION_NODE = NodeDefinition(
    kind="studio.text_generation",
    version="1.0.0",
    title="Text Generation",
    execute=_execute_text,
    input_ports=(PortSpec("prompt", PortType.JSON, required=True),),
    output_ports=(PortSpec("text", PortType.TEXT),),
    config_schema=ConfigSchema(
        fields=(
            ConfigFieldSpec("modelId", "Model", ConfigFieldType.TEXT, required=True),
            ConfigFieldSpec("lockOutput", "Lock output", ConfigFieldType.BOOLEAN),
            ConfigFieldSpec("value", "Output", ConfigFieldType.TEXTAREA),
        ),
        # textDisplayMode and other display state live alongside
        allow_unknown_keys=True,
    ),
    config_defaults={"modelId": DEFAULT_TEXT_MODEL, "lockOutput": False},
    capability_class="api",
)


# ---------------------------------------------------------------------------
# Image generation
# ---------------------------------------------------------------------------


async def _image_prompt(context: NodeContext, raw: Any) -> str:
    """
    Turn the prompt input into a single image prompt.

    Structured prompts (system + user message) are first condensed by a
    text job; plain strings are used as they are. Either way the result is
    cut to the image prompt budget.
    """
    prompt = structured_prompt(raw)
    if prompt is not None:
        system_prompt, user_message = prompt
        request = GenerationRequest(
            kind="text",
            model=DEFAULT_TEXT_MODEL,
            prompt=truncate_prompt(user_message, MAX_IMAGE_PROMPT_CHARS),
            system_prompt=f"{system_prompt}\n\n{IMAGE_PROMPT_INSTRUCTION}",
        )
        job = await run_job(context, request, "text")
        text = next((o.text for o in job.outputs if o.text), "")
        return truncate_prompt(text)
    if isinstance(raw, dict) and isinstance(raw.get("prompt"), str):
        raw = raw["prompt"]
    if isinstance(raw, list):
        raw = "\n\n".join(str(part) for part in raw if isinstance(part, str))
    if not isinstance(raw, str) or not raw.strip():
        raise NodeExecutionError("Image generation requires a prompt", node_id=context.node_id)
    return truncate_prompt(raw)


async def _execute_image(config: dict[str, Any], inputs: dict[str, Any], context: NodeContext) -> NodeResult:
    if context.assets is None:
        raise NodeExecutionError("Image generation needs an asset store", node_id=context.node_id)
    model = str(config.get("modelId") or DEFAULT_IMAGE_MODEL)
    prompt = await _image_prompt(context, inputs.get("prompt"))

    references = inputs.get("images") or []
    if not isinstance(references, list):
        references = [references]
    reference_paths = [r["path"] if isinstance(r, dict) else str(r) for r in references if r]

    request = GenerationRequest(
        kind="image",
        model=model,
        prompt=prompt,
        count=int(parse_number(config.get("count")) or 1),
        aspect_ratio=config.get("aspectRatio"),
        input_images=reference_paths,
    )
    job = await run_job(context, request, "image")

    images = []
    for output in sorted(job.outputs, key=lambda o: o.index):
        if not output.url:
            continue
        provider = _require_provider(context)
        try:
            artifact = await provider.download_artifact(output.url)
        except StudioError:
            raise
        except (httpx.HTTPError, OSError) as e:
            raise TransportError(f"Failed to download {output.url}: {e}", node_id=context.node_id) from e
        ref = await context.assets.store_bytes(artifact.data, output.mime_type or artifact.content_type)
        images.append(ref.model_dump(by_alias=True))

    if not images:
        raise TransportError(f"Generation job {job.id} returned no images", node_id=context.node_id)
    logger.info(f"Image generation produced {len(images)} image(s)")
    return NodeResult(outputs={"images": images}, artifacts=images)


IMAGE_GENERATION_NODE = NodeDefinition(
    kind="studio.image_generation",
    version="1.0.0",
    title="Image Generation",
    execute=_execute_image,
    input_ports=(
        PortSpec("prompt", PortType.ANY, required=True),
        PortSpec("images", PortType.IMAGE_REF),
    ),
    output_ports=(PortSpec("images", PortType.IMAGE_REF),),
    config_schema=ConfigSchema(
        fields=(
            ConfigFieldSpec("modelId", "Model", ConfigFieldType.TEXT, required=True),
            ConfigFieldSpec("count", "Images", ConfigFieldType.NUMBER, min=1, max=8, integer=True),
            ConfigFieldSpec(
                "aspectRatio",
                "Aspect ratio",
                ConfigFieldType.SELECT,
                options=tuple(SelectOption(r, r) for r in ASPECT_RATIOS),
            ),
        ),
    ),
    config_defaults={"modelId": DEFAULT_IMAGE_MODEL, "count": 1, "aspectRatio": "1:1"},
    capability_class="api",
)
