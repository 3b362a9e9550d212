"""Generation provider interface consumed by the generation nodes."""

from nodestudio.providers.generation import (
    CreatedJob,
    DownloadedArtifact,
    GenerationJob,
    GenerationJobOutput,
    GenerationProvider,
    GenerationRequest,
    build_idempotency_key,
)

__all__ = [
    "CreatedJob",
    "DownloadedArtifact",
    "GenerationJob",
    "GenerationJobOutput",
    "GenerationProvider",
    "GenerationRequest",
    "build_idempotency_key",
]
