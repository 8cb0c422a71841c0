"""Unit tests for the JSON and SQL task stores."""

import asyncio
import json
from pathlib import Path

import pytest

from taskgraph.core.exceptions import (
    ErrorCode,
    StoreCorruptError,
    StoreIOError,
    StoreNotFoundError,
)
from taskgraph.tasks.database import SqlTaskStore
from taskgraph.tasks.models import Task, TaskCollection
from taskgraph.tasks.store import JsonTaskStore, decode_collection, validate_project_ref


class TestDecode:
    """Tests for payload decoding."""

    def test_bare_list_is_accepted(self) -> None:
        collection = decode_collection("demo", '[{"id": 1, "title": "Setup"}]')

        assert collection.require(1).title == "Setup"

    def test_invalid_json(self) -> None:
        with pytest.raises(StoreCorruptError) as exc_info:
            decode_collection("demo", "{not json")

        assert exc_info.value.details["reason"] == "CORRUPT"
        assert exc_info.value.code == ErrorCode.STORE_IO_ERROR

    def test_invalid_shape(self) -> None:
        with pytest.raises(StoreCorruptError):
            decode_collection("demo", '{"tasks": [{"id": "x"}]}')

    @pytest.mark.parametrize("ref", ["../etc", "", "a/b", ".hidden"])
    def test_unsafe_project_ref(self, ref: str) -> None:
        with pytest.raises(StoreIOError):
            validate_project_ref(ref)


class TestJsonTaskStore:
    """Tests for the file backend."""

    @pytest.mark.asyncio
    async def test_load_missing_project(self, json_store: JsonTaskStore) -> None:
        with pytest.raises(StoreNotFoundError) as exc_info:
            await json_store.load("nope")

        assert exc_info.value.code == ErrorCode.NOT_FOUND

    @pytest.mark.asyncio
    async def test_save_and_load(self, json_store: JsonTaskStore, sample_collection: TaskCollection) -> None:
        await json_store.save("demo", sample_collection)

        loaded = await json_store.load("demo")

        assert [t.id for t in loaded.tasks] == [1, 2, 3, 4]
        assert loaded.require(3).subtasks[1].title == "Add validation"
        assert "updatedAt" in loaded.metadata
        raw = json.loads(json_store.tasks_path("demo").read_text())
        assert raw["tasks"][2]["dependencies"] == [2]

    @pytest.mark.asyncio
    async def test_load_corrupt_file(self, json_store: JsonTaskStore) -> None:
        path = json_store.tasks_path("demo")
        path.parent.mkdir(parents=True)
        path.write_text("{ half written")

        with pytest.raises(StoreCorruptError):
            await json_store.load("demo")

    @pytest.mark.asyncio
    async def test_backup_before_overwrite(self, json_store: JsonTaskStore) -> None:
        await json_store.save("demo", TaskCollection(tasks=[Task(id=1, title="First")]))
        assert json_store.list_backups("demo") == []

        await json_store.save("demo", TaskCollection(tasks=[Task(id=1, title="Second")]))

        backups = json_store.list_backups("demo")
        assert len(backups) == 1
        assert json.loads(backups[0].read_text())["tasks"][0]["title"] == "First"

    @pytest.mark.asyncio
    async def test_backup_retention(self, json_store: JsonTaskStore) -> None:
        for i in range(6):
            await json_store.save("demo", TaskCollection(tasks=[Task(id=1, title=f"Version {i}")]))

        backups = json_store.list_backups("demo")
        assert len(backups) == json_store.backup_retention == 3
        assert json.loads(backups[0].read_text())["tasks"][0]["title"] == "Version 4"

    @pytest.mark.asyncio
    async def test_no_temp_files_left(self, json_store: JsonTaskStore, sample_collection: TaskCollection) -> None:
        await json_store.save("demo", sample_collection)
        await json_store.save("demo", sample_collection)

        leftovers = [p.name for p in json_store.project_dir("demo").iterdir() if p.suffix == ".tmp"]
        assert leftovers == []

    @pytest.mark.asyncio
    async def test_restore_latest_backup(self, json_store: JsonTaskStore) -> None:
        await json_store.save("demo", TaskCollection(tasks=[Task(id=1, title="Good")]))
        await json_store.save("demo", TaskCollection(tasks=[Task(id=1, title="Bad")]))

        restored = await json_store.restore_latest_backup("demo")

        assert restored.require(1).title == "Good"
        assert (await json_store.load("demo")).require(1).title == "Good"
        assert json_store.list_backups("demo") == []

    @pytest.mark.asyncio
    async def test_restore_without_backup(self, json_store: JsonTaskStore) -> None:
        with pytest.raises(StoreNotFoundError):
            await json_store.restore_latest_backup("demo")

    @pytest.mark.asyncio
    async def test_initialize(self, json_store: JsonTaskStore) -> None:
        collection = await json_store.initialize("fresh", name="Fresh Project")

        assert collection.tasks == []
        assert (await json_store.load("fresh")).metadata["projectName"] == "Fresh Project"
        with pytest.raises(StoreIOError):
            await json_store.initialize("fresh")

    @pytest.mark.asyncio
    async def test_lock_is_exclusive(self, json_store: JsonTaskStore) -> None:
        """A second holder waits until the first releases the lock."""
        order: list[str] = []

        async def holder(name: str, delay: float) -> None:
            async with json_store.lock("demo"):
                order.append(f"{name}-in")
                await asyncio.sleep(delay)
                order.append(f"{name}-out")

        await asyncio.gather(holder("a", 0.05), holder("b", 0.0))

        assert order == ["a-in", "a-out", "b-in", "b-out"]
        assert not json_store.is_locked("demo")


class TestSqlTaskStore:
    """Tests for the SQLAlchemy backend on SQLite."""

    @pytest.fixture
    def sql_store(self, tmp_path: Path) -> SqlTaskStore:
        return SqlTaskStore(f"sqlite+aiosqlite:///{tmp_path / 'tasks.db'}", backup_retention=2)

    @pytest.mark.asyncio
    async def test_save_and_load(self, sql_store: SqlTaskStore, sample_collection: TaskCollection) -> None:
        try:
            assert not await sql_store.exists("demo")
            await sql_store.save("demo", sample_collection)

            loaded = await sql_store.load("demo")

            assert await sql_store.exists("demo")
            assert loaded.require(2).dependencies == [1]
        finally:
            await sql_store.close()

    @pytest.mark.asyncio
    async def test_load_missing_project(self, sql_store: SqlTaskStore) -> None:
        try:
            with pytest.raises(StoreNotFoundError):
                await sql_store.load("nope")
        finally:
            await sql_store.close()

    @pytest.mark.asyncio
    async def test_backups_and_restore(self, sql_store: SqlTaskStore) -> None:
        try:
            for i in range(4):
                await sql_store.save("demo", TaskCollection(tasks=[Task(id=1, title=f"Version {i}")]))

            assert await sql_store.backup_count("demo") == 2

            restored = await sql_store.restore_latest_backup("demo")

            assert restored.require(1).title == "Version 2"
            assert (await sql_store.load("demo")).require(1).title == "Version 2"
            assert await sql_store.backup_count("demo") == 1
        finally:
            await sql_store.close()
