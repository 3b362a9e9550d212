"""
Project Session - the live, editable copy of an open project.

User edits, run bookkeeping and output reconciliation all mutate the same
project. Every mutation goes through ``edit()``, which serialises writers
behind one lock, so edits issued while a run is active wait their turn
instead of being dropped. Saving is debounced: a burst of edits produces a
single write once the burst settles, and ``flush()`` forces any pending
write out immediately.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from nodestudio.config import DEFAULT_SAVE_DEBOUNCE_MS
from nodestudio.graph.project import Project
from nodestudio.storage.project_store import ProjectStore

logger = logging.getLogger(__name__)


class ProjectSession:
    def __init__(
        self,
        path: Path,
        project: Project,
        store: ProjectStore | None = None,
        save_debounce_ms: int = DEFAULT_SAVE_DEBOUNCE_MS,
    ):
        self.path = Path(path)
        self.store = store or ProjectStore()
        self.save_debounce_ms = save_debounce_ms
        self._project = project
        self._lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._dirty = False
        self._save_task: asyncio.Task | None = None
        self.save_count = 0

    @classmethod
    async def open(
        cls,
        path: Path,
        store: ProjectStore | None = None,
        save_debounce_ms: int = DEFAULT_SAVE_DEBOUNCE_MS,
    ) -> "ProjectSession":
        store = store or ProjectStore()
        project = await store.load_project(path)
        return cls(path, project, store=store, save_debounce_ms=save_debounce_ms)

    @property
    def project(self) -> Project:
        """Direct read access; mutate only inside ``edit()``."""
        return self._project

    @property
    def dirty(self) -> bool:
        return self._dirty

    @asynccontextmanager
    async def edit(self, track: bool = True) -> AsyncIterator[Project]:
        """
        Exclusive access to the live project.

        With ``track=True`` the project is marked dirty and a save is
        scheduled when the block exits. Pass ``track=False`` when the
        caller decides afterwards (see ``mark_dirty``). A block that raises
        is always marked dirty.
        """
        async with self._lock:
            try:
                yield self._project
            except BaseException:
                self._mark_dirty_locked()
                raise
            if track:
                self._mark_dirty_locked()

    def mark_dirty(self) -> None:
        self._mark_dirty_locked()

    async def snapshot(self) -> Project:
        """A deep copy taken between edits."""
        async with self._lock:
            return self._project.snapshot()

    def _mark_dirty_locked(self) -> None:
        self._project.touch()
        self._dirty = True
        self._schedule_save()

    def _schedule_save(self) -> None:
        if self._save_task is not None and not self._save_task.done():
            self._save_task.cancel()
        self._save_task = asyncio.create_task(self._debounced_save())

    async def _debounced_save(self) -> None:
        await asyncio.sleep(self.save_debounce_ms / 1000)
        # an in-progress write must not be torn by a later reschedule
        try:
            await asyncio.shield(self._write())
        except OSError as e:
            logger.error(f"Debounced save of {self.path} failed: {e}")

    async def _write(self) -> None:
        async with self._write_lock:
            async with self._lock:
                if not self._dirty:
                    return
                document = self._project.model_copy(deep=True)
                self._dirty = False
            try:
                await self.store.save_project(self.path, document)
            except Exception:
                self._dirty = True
                raise
            self.save_count += 1
            logger.debug(f"Saved project {document.project_id} (write #{self.save_count})")

    async def flush(self) -> None:
        """Cancel any pending debounce timer and write now if there are unsaved changes."""
        task = self._save_task
        self._save_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._write()

    async def close(self) -> None:
        await self.flush()
