"""Task storage - load/save contract and the JSON file backend.

Every backend offers atomic load, atomic save-with-backup and an
in-process exclusive lock per project. The mutation engine holds that
lock for its whole load -> validate -> write sequence.
"""

import asyncio
import json
import os
import re
import tempfile
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

from loguru import logger
from pydantic import ValidationError as PydanticValidationError

from taskgraph.core.exceptions import StoreCorruptError, StoreIOError, StoreNotFoundError
from taskgraph.tasks.models import TaskCollection

_PROJECT_REF_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


def validate_project_ref(project_ref: str) -> str:
    """Reject project references that are not safe path components."""
    if not _PROJECT_REF_RE.match(project_ref) or ".." in project_ref:
        raise StoreIOError(f"Invalid project reference: '{project_ref}'")
    return project_ref


def decode_collection(project_ref: str, raw: str | bytes) -> TaskCollection:
    """Decode stored JSON into a TaskCollection.

    Raises:
        StoreCorruptError: If the payload is not valid JSON or not a valid collection.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise StoreCorruptError(project_ref, f"invalid JSON: {e}") from e

    # Bare task lists are accepted
    if isinstance(data, list):
        data = {"tasks": data}
    if not isinstance(data, dict):
        raise StoreCorruptError(project_ref, "top-level value must be an object")

    try:
        return TaskCollection.model_validate(data)
    except PydanticValidationError as e:
        raise StoreCorruptError(project_ref, f"{e.error_count()} validation errors") from e


def encode_collection(collection: TaskCollection) -> str:
    """Encode a collection as pretty-printed JSON."""
    return json.dumps(collection.to_dict(), indent=2, ensure_ascii=False)


# =============================================================================
# STORE CONTRACT
# =============================================================================


class TaskStore(ABC):
    """Load/save contract shared by every persistence backend."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    @asynccontextmanager
    async def lock(self, project_ref: str) -> AsyncGenerator[None, None]:
        """
        Hold the exclusive per-project write lock.

        Example:
            >>> async with store.lock("default"):
            ...     collection = await store.load("default")
            ...     await store.save("default", collection)
        """
        lock = self._locks.setdefault(project_ref, asyncio.Lock())
        async with lock:
            yield

    def is_locked(self, project_ref: str) -> bool:
        lock = self._locks.get(project_ref)
        return lock is not None and lock.locked()

    @abstractmethod
    async def load(self, project_ref: str) -> TaskCollection:
        """Load the full collection or raise StoreNotFoundError / StoreCorruptError."""

    @abstractmethod
    async def save(self, project_ref: str, collection: TaskCollection) -> None:
        """Persist the whole collection atomically, backing up the prior version."""

    @abstractmethod
    async def exists(self, project_ref: str) -> bool:
        """Check whether the project has a stored collection."""

    async def initialize(self, project_ref: str, name: str | None = None) -> TaskCollection:
        """Create an empty collection for a new project.

        Raises:
            StoreIOError: If the project already exists.
        """
        if await self.exists(project_ref):
            raise StoreIOError(f"Project '{project_ref}' already exists")
        now = datetime.now(timezone.utc).isoformat()
        collection = TaskCollection(
            metadata={"projectName": name or project_ref, "createdAt": now, "updatedAt": now}
        )
        await self.save(project_ref, collection)
        logger.info(f"Initialized project '{project_ref}'")
        return collection

    async def close(self) -> None:
        """Release backend resources."""


# =============================================================================
# JSON FILE STORE
# =============================================================================


class JsonTaskStore(TaskStore):
    """
    File backend: ``<root>/<project>/tasks.json``.

    Writes go to a temp file in the same directory followed by os.replace,
    so readers see either the old or the new collection. The previous
    file is copied to ``backups/`` first; the newest ``backup_retention``
    backups are kept.

    Example:
        >>> store = JsonTaskStore("./.taskgraph")
        >>> collection = await store.load("default")
    """

    def __init__(self, root: str | Path, backup_retention: int = 5) -> None:
        """
        Initialize the store.

        Args:
            root: Data directory holding one folder per project.
            backup_retention: Number of backups kept per project.
        """
        super().__init__()
        self.root = Path(root)
        self.backup_retention = max(1, backup_retention)

    def project_dir(self, project_ref: str) -> Path:
        return self.root / validate_project_ref(project_ref)

    def tasks_path(self, project_ref: str) -> Path:
        return self.project_dir(project_ref) / "tasks.json"

    def backups_dir(self, project_ref: str) -> Path:
        return self.project_dir(project_ref) / "backups"

    async def exists(self, project_ref: str) -> bool:
        return self.tasks_path(project_ref).is_file()

    async def load(self, project_ref: str) -> TaskCollection:
        path = self.tasks_path(project_ref)
        try:
            raw = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except FileNotFoundError as e:
            raise StoreNotFoundError(project_ref) from e
        except OSError as e:
            raise StoreIOError(f"Failed to read {path}: {e}") from e

        collection = decode_collection(project_ref, raw)
        logger.debug(f"Loaded {len(collection.tasks)} tasks for project '{project_ref}'")
        return collection

    async def save(self, project_ref: str, collection: TaskCollection) -> None:
        collection.metadata["updatedAt"] = datetime.now(timezone.utc).isoformat()
        payload = encode_collection(collection)
        try:
            await asyncio.to_thread(self._write, project_ref, payload)
        except OSError as e:
            raise StoreIOError(f"Failed to save project '{project_ref}': {e}") from e
        logger.debug(f"Saved {len(collection.tasks)} tasks for project '{project_ref}'")

    def _write(self, project_ref: str, payload: str) -> None:
        path = self.tasks_path(project_ref)
        path.parent.mkdir(parents=True, exist_ok=True)

        if path.exists():
            self._backup(project_ref, path)

        fd, tmp_name = tempfile.mkstemp(prefix=".tasks-", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def _backup(self, project_ref: str, path: Path) -> None:
        backups = self.backups_dir(project_ref)
        backups.mkdir(parents=True, exist_ok=True)
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
        target = backups / f"tasks_{stamp}.json"
        counter = 1
        while target.exists():
            target = backups / f"tasks_{stamp}_{counter}.json"
            counter += 1
        target.write_bytes(path.read_bytes())

        for stale in self._sorted_backups(project_ref)[self.backup_retention :]:
            stale.unlink(missing_ok=True)

    def _sorted_backups(self, project_ref: str) -> list[Path]:
        """Backups newest first."""
        backups = self.backups_dir(project_ref)
        if not backups.is_dir():
            return []
        return sorted(backups.glob("tasks_*.json"), key=lambda p: p.name, reverse=True)

    def list_backups(self, project_ref: str) -> list[Path]:
        return self._sorted_backups(project_ref)

    async def restore_latest_backup(self, project_ref: str) -> TaskCollection:
        """
        Restore the newest backup over tasks.json.

        Raises:
            StoreNotFoundError: If no backup exists.
            StoreCorruptError: If the backup cannot be decoded.
        """
        backups = self._sorted_backups(project_ref)
        if not backups:
            raise StoreNotFoundError(project_ref)
        latest = backups[0]
        collection = decode_collection(project_ref, latest.read_text(encoding="utf-8"))
        await asyncio.to_thread(self._replace_with, project_ref, encode_collection(collection))
        latest.unlink(missing_ok=True)
        logger.warning(f"Restored project '{project_ref}' from backup {latest.name}")
        return collection

    def _replace_with(self, project_ref: str, payload: str) -> None:
        path = self.tasks_path(project_ref)
        fd, tmp_name = tempfile.mkstemp(prefix=".tasks-", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(payload)
        os.replace(tmp_name, path)
