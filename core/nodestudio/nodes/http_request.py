"""HTTP request node: one request per run through httpx, with retries."""

import asyncio
import json
import logging
from typing import Any

import httpx

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
    SelectOption,
)

logger = logging.getLogger(__name__)

METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")
RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})
RETRY_BASE_DELAY_SECONDS = 0.5
DEFAULT_TIMEOUT_SECONDS = 30.0


def _make_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=timeout, follow_redirects=True)


def _retry_delay(response: httpx.Response | None, attempt: int) -> float:
    if response is not None:
        retry_after = response.headers.get("retry-after")
        if retry_after:
            try:
                return min(30.0, max(0.0, float(retry_after)))
            except ValueError:
                pass
    return RETRY_BASE_DELAY_SECONDS * (2**attempt)


def _parse_json(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "json" not in content_type:
        return None
    try:
        return response.json()
    except (json.JSONDecodeError, ValueError):
        return None


async def _execute(config: dict[str, Any], inputs: dict[str, Any], context: NodeContext) -> NodeResult:
    url = inputs.get("url") if isinstance(inputs.get("url"), str) and inputs["url"].strip() else config.get("url")
    url = str(url or "").strip()
    if not url:
        raise NodeExecutionError("HTTP request requires a URL", node_id=context.node_id)

    method = str(config.get("method") or "GET").upper()
    headers = {str(k): str(v) for k, v in (config.get("headers") or {}).items()}
    body = inputs.get("body", config.get("body"))
    max_retries = int(parse_number(config.get("maxRetries")) or 0)
    timeout = DEFAULT_TIMEOUT_SECONDS
    timeout_ms = parse_number(config.get("timeoutMs"))
    if timeout_ms is not None and timeout_ms > 0:
        timeout = timeout_ms / 1000

    request_kwargs: dict[str, Any] = {"headers": headers}
    if method != "GET" and body is not None:
        if isinstance(body, str):
            request_kwargs["content"] = body
        else:
            request_kwargs["json"] = body

    response: httpx.Response | None = None
    async with _make_client(timeout) as client:
        for attempt in range(max_retries + 1):
            if context.cancelled:
                raise NodeExecutionError("Request cancelled", node_id=context.node_id)
            try:
                response = await client.request(method, url, **request_kwargs)
            except httpx.TransportError as e:
                if attempt >= max_retries:
                    raise NodeExecutionError(f"{method} {url} failed: {e}", node_id=context.node_id) from e
                delay = _retry_delay(None, attempt)
                logger.warning(f"{method} {url} transport error ({e}); retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue

            if response.status_code in RETRYABLE_STATUS and attempt < max_retries:
                delay = _retry_delay(response, attempt)
                logger.warning(f"{method} {url} returned {response.status_code}; retrying in {delay:.1f}s")
                await asyncio.sleep(delay)
                continue
            break

    if response is None:
        raise NodeExecutionError(f"{method} {url} produced no response", node_id=context.node_id)
    if response.is_error:
        raise NodeExecutionError(
            f"{method} {url} returned HTTP {response.status_code}: {response.text[:200]}",
            node_id=context.node_id,
        )

    return NodeResult(
        outputs={
            "status": response.status_code,
            "body": response.text,
            "json": _parse_json(response),
            "headers": dict(response.headers),
        }
    )


HTTP_REQUEST_NODE = NodeDefinition(
    kind="studio.http_request",
    version="1.0.0",
    title="HTTP Request",
    execute=_execute,
    input_ports=(
        PortSpec("url", PortType.TEXT),
        PortSpec("body", PortType.ANY),
    ),
    output_ports=(
        PortSpec("status", PortType.NUMBER),
        PortSpec("body", PortType.TEXT),
        PortSpec("json", PortType.JSON),
        PortSpec("headers", PortType.JSON),
    ),
    config_schema=ConfigSchema(
        fields=(
            ConfigFieldSpec(
                "method",
                "Method",
                ConfigFieldType.SELECT,
                required=True,
                options=tuple(SelectOption(m, m) for m in METHODS),
            ),
            ConfigFieldSpec("url", "URL", ConfigFieldType.TEXT),
            ConfigFieldSpec("headers", "Headers", ConfigFieldType.JSON_OBJECT),
            ConfigFieldSpec("body", "JSON body", ConfigFieldType.JSON_OBJECT),
            ConfigFieldSpec("maxRetries", "Max retries", ConfigFieldType.NUMBER, min=0, max=5, integer=True),
            ConfigFieldSpec("timeoutMs", "Timeout (ms)", ConfigFieldType.NUMBER, min=0, integer=True),
        ),
    ),
    config_defaults={"method": "GET", "headers": {}, "maxRetries": 2},
    cache_policy=CachePolicy.NEVER,
    capability_class="api",
)
