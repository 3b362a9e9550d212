"""
Node Protocol - what a node kind declares and how it is executed.

A NodeDefinition is the registered, versioned description of a node kind:
its typed input/output ports, its config schema and defaults, its cache
policy, and the coroutine that does the work. Definitions are immutable;
the graph only ever references them by (kind, version).
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Literal

if TYPE_CHECKING:
    from nodestudio.config import StudioSettings
    from nodestudio.providers.generation import GenerationProvider
    from nodestudio.storage.asset_store import AssetStore


class PortType(StrEnum):
    """Value types carried by ports."""

    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON = "json"
    IMAGE_REF = "image_ref"
    AUDIO_REF = "audio_ref"
    VIDEO_REF = "video_ref"
    BINARY_REF = "binary_ref"
    ANY = "any"  # Wildcard, connects to anything


def ports_compatible(source: PortType | str, target: PortType | str) -> bool:
    """A connection is valid iff the types match or either side is ``any``."""
    return source == target or source == PortType.ANY or target == PortType.ANY


class CachePolicy(StrEnum):
    BY_INPUTS = "by_inputs"
    NEVER = "never"


class ConfigFieldType(StrEnum):
    """Config field kinds understood by the validator."""

    TEXT = "text"
    TEXTAREA = "textarea"
    NUMBER = "number"
    BOOLEAN = "boolean"
    JSON_OBJECT = "json_object"
    STRING_LIST = "string_list"
    SELECT = "select"
    FILE_PATH = "file_path"
    DIRECTORY_PATH = "directory_path"
    MEDIA_PATH = "media_path"


TEXT_LIKE_FIELD_TYPES = frozenset(
    {
        ConfigFieldType.TEXT,
        ConfigFieldType.TEXTAREA,
        ConfigFieldType.FILE_PATH,
        ConfigFieldType.DIRECTORY_PATH,
        ConfigFieldType.MEDIA_PATH,
    }
)


@dataclass(frozen=True)
class PortSpec:
    id: str
    type: PortType | str
    required: bool = False
    label: str | None = None


@dataclass(frozen=True)
class SelectOption:
    value: str
    label: str


@dataclass(frozen=True)
class VisibleWhen:
    """A field only applies while ``config[key] == equals``."""

    key: str
    equals: Any


@dataclass(frozen=True)
class ConfigFieldSpec:
    key: str
    label: str
    type: ConfigFieldType | str
    required: bool = False
    min: float | None = None
    max: float | None = None
    integer: bool = False
    options: tuple[SelectOption, ...] | None = None
    visible_when: VisibleWhen | None = None


@dataclass(frozen=True)
class ConfigSchema:
    fields: tuple[ConfigFieldSpec, ...] = ()
    allow_unknown_keys: bool = False

    def get_field(self, key: str) -> ConfigFieldSpec | None:
        for spec in self.fields:
            if spec.key == key:
                return spec
        return None

    @property
    def keys(self) -> set[str]:
        return {spec.key for spec in self.fields}


@dataclass
class NodeResult:
    """What an execute call hands back to the executor."""

    outputs: dict[str, Any] = field(default_factory=dict)
    artifacts: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class NodeContext:
    """
    Per-invocation context handed to ``execute``.

    ``cancel_event`` is the run's cancellation signal; long-running nodes
    should pass it on to external calls so they stop cooperatively.
    """

    run_id: str
    node_id: str
    node_title: str
    cancel_event: asyncio.Event
    settings: "StudioSettings | None" = None
    assets: "AssetStore | None" = None
    provider: "GenerationProvider | None" = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


ExecuteFn = Callable[[dict[str, Any], dict[str, Any], NodeContext], Awaitable[NodeResult | dict[str, Any]]]


@dataclass(frozen=True)
class NodeDefinition:
    """Registered description of one node kind at one version."""

    kind: str
    version: str
    execute: ExecuteFn
    input_ports: tuple[PortSpec, ...] = ()
    output_ports: tuple[PortSpec, ...] = ()
    config_schema: ConfigSchema = field(default_factory=ConfigSchema)
    config_defaults: dict[str, Any] = field(default_factory=dict)
    cache_policy: CachePolicy = CachePolicy.BY_INPUTS
    capability_class: Literal["local_cpu", "local_io", "api"] = "local_cpu"
    timeout_seconds: float | None = None
    title: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.kind, self.version)

    def get_input_port(self, port_id: str) -> PortSpec | None:
        return next((p for p in self.input_ports if p.id == port_id), None)

    def get_output_port(self, port_id: str) -> PortSpec | None:
        return next((p for p in self.output_ports if p.id == port_id), None)

    @property
    def cacheable(self) -> bool:
        return self.cache_policy == CachePolicy.BY_INPUTS
