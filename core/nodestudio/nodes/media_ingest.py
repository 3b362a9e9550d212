"""Media ingest node: exposes a media file path to downstream nodes."""

import mimetypes
from typing import Any

from nodestudio.errors import NodeExecutionError
from nodestudio.graph.managed_outputs import SLOT_KEY
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


def media_kind_for(path: str) -> str:
    mime_type, _ = mimetypes.guess_type(path)
    if mime_type:
        major = mime_type.split("/")[0]
        if major in ("image", "audio", "video"):
            return major
    return "file"


def _path_of(item: Any) -> str:
    if isinstance(item, str):
        return item.strip()
    if isinstance(item, dict) and isinstance(item.get("path"), str):
        return item["path"].strip()
    return ""


def resolve_media_path(config: dict[str, Any], inputs: dict[str, Any]) -> str:
    """
    Pick the path to expose.

    A list on the ``media`` port (a generator's full output) is indexed by
    the node's slot; otherwise the first usable of media, path and the
    configured ``sourcePath`` wins.
    """
    media = inputs.get("media")
    if isinstance(media, list) and media:
        slot = config.get(SLOT_KEY)
        index = slot if isinstance(slot, int) and not isinstance(slot, bool) and 0 <= slot < len(media) else 0
        chosen = _path_of(media[index])
        if chosen:
            return chosen
    elif media is not None:
        chosen = _path_of(media)
        if chosen:
            return chosen
    path_input = _path_of(inputs.get("path"))
    if path_input:
        return path_input
    return str(config.get("sourcePath") or "").strip()


async def _execute(config: dict[str, Any], inputs: dict[str, Any], context: NodeContext) -> NodeResult:
    path = resolve_media_path(config, inputs)
    if not path:
        raise NodeExecutionError("Media ingest requires a source path", node_id=context.node_id)
    mime_type, _ = mimetypes.guess_type(path)
    return NodeResult(
        outputs={
            "path": path,
            "media_kind": media_kind_for(path),
            "mime_type": mime_type or "application/octet-stream",
        }
    )


MEDIA_INGEST_NODE = NodeDefinition(
    kind="studio.media_ingest",
    version="1.0.0",
    title="Media",
    execute=_execute,
    input_ports=(
        PortSpec("media", PortType.IMAGE_REF),
        PortSpec("path", PortType.ANY),
    ),
    output_ports=(
        PortSpec("path", PortType.TEXT),
        PortSpec("media_kind", PortType.TEXT),
        PortSpec("mime_type", PortType.TEXT),
    ),
    config_schema=ConfigSchema(
        fields=(ConfigFieldSpec("sourcePath", "Source path", ConfigFieldType.MEDIA_PATH),),
        allow_unknown_keys=True,
    ),
    capability_class="local_io",
)
