"""
Project Store - reading and writing project documents.

A project is one JSON file. Sidecar data lives next to it, named after the
project file's stem:

    my-project.studio.json        project document
    my-project.studio.cache.json  node output cache
    my-project.studio.runs/       run history (events + index)
    my-project.studio.assets/     content-addressed generated files
"""

import asyncio
import json
import logging
import uuid
from pathlib import Path

from pydantic import ValidationError

from nodestudio.errors import ProjectFormatError
from nodestudio.graph.project import PROJECT_SCHEMA, Project
from nodestudio.utils.io import atomic_write

logger = logging.getLogger(__name__)

PROJECT_SUFFIX = ".studio.json"


def sidecar_path(project_path: Path, suffix: str) -> Path:
    """``<dir>/<stem><suffix>`` for a project file."""
    project_path = Path(project_path)
    return project_path.with_name(f"{project_path.stem}{suffix}")


def serialize_project(project: Project) -> str:
    return json.dumps(project.to_document(), indent=2, ensure_ascii=False) + "\n"


def parse_project(text: str, source: str = "<memory>") -> Project:
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProjectFormatError(f"{source} is not valid JSON: {e}") from e
    if not isinstance(raw, dict):
        raise ProjectFormatError(f"{source} does not contain a project object")
    schema = raw.get("schema", PROJECT_SCHEMA)
    if schema != PROJECT_SCHEMA:
        raise ProjectFormatError(f"{source} has unsupported schema '{schema}'")
    try:
        return Project.model_validate(raw)
    except ValidationError as e:
        raise ProjectFormatError(f"{source} is not a valid project: {e}") from e


class ProjectStore:
    """Loads and saves project documents atomically."""

    async def create_project(self, name: str, path: Path) -> Project:
        path = Path(path)
        if path.exists():
            raise FileExistsError(f"Project file already exists: {path}")
        project = Project(project_id=f"proj_{uuid.uuid4().hex[:12]}", name=name)
        await self.save_project(path, project)
        logger.info(f"Created project '{name}' at {path}")
        return project

    async def load_project(self, path: Path) -> Project:
        path = Path(path)

        def _read() -> str:
            return path.read_text(encoding="utf-8")

        text = await asyncio.to_thread(_read)
        project = parse_project(text, source=str(path))
        logger.debug(f"Loaded project {project.project_id} ({len(project.graph.nodes)} nodes) from {path}")
        return project

    async def save_project(self, path: Path, project: Project) -> None:
        path = Path(path)
        document = serialize_project(project)

        def _write() -> None:
            with atomic_write(path) as f:
                f.write(document)

        await asyncio.to_thread(_write)
        logger.debug(f"Saved project {project.project_id} to {path}")
