"""CLI command node: runs a local program and captures its output."""

import asyncio
import logging
import os
from typing import Any

from nodestudio.errors import NodeExecutionError
from nodestudio.graph.config_validation import parse_number
from nodestudio.graph.node import (
    CachePolicy,
    ConfigFieldSpec,
    ConfigFieldType,
    ConfigSchema,
    NodeContext,
    NodeDefinition,
    NodeResult,
    PortSpec,
    PortType,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 1_000_000


def _truncate(data: bytes, limit: int) -> str:
    text = data[:limit].decode("utf-8", errors="replace")
    if len(data) > limit:
        text += f"\n[truncated {len(data) - limit} bytes]"
    return text


async def _execute(config: dict[str, Any], inputs: dict[str, Any], context: NodeContext) -> NodeResult:
    command = str(config.get("command") or "").strip()
    args = [str(a) for a in config.get("args") or []]
    extra_args = inputs.get("args")
    if isinstance(extra_args, list):
        args.extend(str(a) for a in extra_args)
    elif isinstance(extra_args, str) and extra_args:
        args.append(extra_args)

    cwd = config.get("cwd") or None
    if cwd and not os.path.isdir(cwd):
        raise NodeExecutionError(f"Working directory does not exist: {cwd}", node_id=context.node_id)

    stdin = inputs.get("stdin")
    stdin_bytes = stdin.encode("utf-8") if isinstance(stdin, str) else None
    max_bytes = int(parse_number(config.get("maxOutputBytes")) or DEFAULT_MAX_OUTPUT_BYTES)

    logger.info(f"Running command: {command} {' '.join(args)}".rstrip())
    try:
        proc = await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.PIPE if stdin_bytes is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise NodeExecutionError(f"Failed to start '{command}': {e}", node_id=context.node_id) from e

    try:
        stdout, stderr = await proc.communicate(stdin_bytes)
    except asyncio.CancelledError:
        # timeout or run cancellation
        proc.kill()
        await proc.wait()
        raise

    outputs = {
        "stdout": _truncate(stdout, max_bytes),
        "stderr": _truncate(stderr, max_bytes),
        "exit_code": proc.returncode,
    }
    if proc.returncode != 0 and config.get("failOnNonZeroExit", True):
        message = f"Command exited with code {proc.returncode}"
        last_line = outputs["stderr"].strip().splitlines()[-1:]
        if last_line:
            message += f": {last_line[0]}"
        raise NodeExecutionError(message, node_id=context.node_id)
    return NodeResult(outputs=outputs)


CLI_COMMAND_NODE = NodeDefinition(
    kind="studio.cli_command",
    version="1.0.0",
    title="CLI Command",
    execute=_execute,
    input_ports=(
        PortSpec("stdin", PortType.TEXT),
        PortSpec("args", PortType.ANY),
    ),
    output_ports=(
        PortSpec("stdout", PortType.TEXT),
        PortSpec("stderr", PortType.TEXT),
        PortSpec("exit_code", PortType.NUMBER),
    ),
    config_schema=ConfigSchema(
        fields=(
            ConfigFieldSpec("command", "Command", ConfigFieldType.TEXT, required=True),
            ConfigFieldSpec("args", "Arguments", ConfigFieldType.STRING_LIST),
            ConfigFieldSpec("cwd", "Working directory", ConfigFieldType.DIRECTORY_PATH),
            ConfigFieldSpec("timeoutMs", "Timeout (ms)", ConfigFieldType.NUMBER, min=0, integer=True),
            ConfigFieldSpec("maxOutputBytes", "Max output bytes", ConfigFieldType.NUMBER, min=1, integer=True),
            ConfigFieldSpec("failOnNonZeroExit", "Fail on non-zero exit", ConfigFieldType.BOOLEAN),
        ),
    ),
    config_defaults={
        "args": [],
        "timeoutMs": 60_000,
        "maxOutputBytes": DEFAULT_MAX_OUTPUT_BYTES,
        "failOnNonZeroExit": True,
    },
    cache_policy=CachePolicy.NEVER,
    capability_class="local_io",
)
