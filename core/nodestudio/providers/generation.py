"""Generation provider abstraction.

Only the surface the generation nodes consume lives here. Transport
details (HTTP, authentication, retry and polling) belong to concrete
implementations supplied by the embedding application.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any, Literal

from pydantic import BaseModel, Field

JobStatus = Literal["queued", "processing", "succeeded", "failed", "cancelled"]


class GenerationRequest(BaseModel):
    """Payload for a text or image generation job."""

    kind: Literal["text", "image"]
    model: str
    prompt: str
    system_prompt: str | None = None
    count: int = Field(default=1, ge=1, le=8)
    aspect_ratio: str | None = None
    input_images: list[str] = Field(default_factory=list)
    options: dict[str, Any] = Field(default_factory=dict)


class GenerationJobOutput(BaseModel):
    index: int = 0
    url: str | None = None
    mime_type: str | None = None
    text: str | None = None


class GenerationJob(BaseModel):
    id: str
    status: JobStatus = "queued"
    outputs: list[GenerationJobOutput] = Field(default_factory=list)
    error: str | None = None

    model_config = {"extra": "allow"}

    @property
    def finished(self) -> bool:
        return self.status in ("succeeded", "failed", "cancelled")


class CreatedJob(BaseModel):
    job: GenerationJob
    poll_url: str | None = None


class DownloadedArtifact(BaseModel):
    data: bytes
    content_type: str = "application/octet-stream"


JobUpdateCallback = Callable[[GenerationJob], Awaitable[None] | None]


def build_idempotency_key(kind: str, run_id: str, model: str, request: GenerationRequest) -> str:
    """
    Stable key for one logical job, so a retried submission within the same
    run is deduplicated by the provider.
    """
    digest = hashlib.sha256(request.model_dump_json().encode("utf-8")).hexdigest()[:16]
    return f"studio-{kind}-{run_id}-{model}-{digest}"


class GenerationProvider(ABC):
    """
    Abstract generation provider.

    Implementations should handle:
    - Authentication and request formatting
    - Polling with an increasing interval up to ``max_poll_interval_ms``
    - Stopping cooperatively when ``signal`` is set
    - Raising ``nodestudio.errors.TransportError`` on provider failures
    """

    @abstractmethod
    async def create_job(self, request: GenerationRequest, idempotency_key: str) -> CreatedJob:
        """Submit a job and return its initial state."""

    @abstractmethod
    async def wait_for_job(
        self,
        job_id: str,
        poll_interval_ms: int,
        max_poll_interval_ms: int,
        max_wait_ms: int,
        signal: asyncio.Event | None = None,
        on_update: JobUpdateCallback | None = None,
    ) -> GenerationJob:
        """Poll until the job finishes and return its final state with outputs."""

    @abstractmethod
    async def download_artifact(self, url: str) -> DownloadedArtifact:
        """Fetch the bytes of one job output."""
