"""Async SQL task store (SQLAlchemy 2)."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import DateTime, Integer, String, Text, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from taskgraph.core.exceptions import StoreIOError, StoreNotFoundError
from taskgraph.tasks.models import TaskCollection
from taskgraph.tasks.store import (
    TaskStore,
    decode_collection,
    encode_collection,
    validate_project_ref,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ORM MODELS
# =============================================================================


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""


class ProjectRecord(Base):
    """One row per project holding the serialised collection."""

    __tablename__ = "taskgraph_projects"

    project_ref: Mapped[str] = mapped_column(String(128), primary_key=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
    )

    def __repr__(self) -> str:
        return f"<ProjectRecord(project_ref={self.project_ref}, version={self.version})>"


class BackupRecord(Base):
    """Prior version of a project's collection, written before each overwrite."""

    __tablename__ = "taskgraph_backups"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    project_ref: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


# =============================================================================
# SQL STORE
# =============================================================================


class SqlTaskStore(TaskStore):
    """
    Database backend.

    Each save runs in one transaction that copies the current row into
    the backup table and then overwrites it with the new version.

    Example:
        >>> store = SqlTaskStore("sqlite+aiosqlite:///./tasks.db")
        >>> await store.init_db()
        >>> await store.save("default", collection)
    """

    def __init__(self, database_url: str, backup_retention: int = 5, echo: bool = False) -> None:
        """
        Initialize the store.

        Args:
            database_url: SQLAlchemy async URL.
            backup_retention: Number of backups kept per project.
            echo: Log SQL statements.
        """
        super().__init__()
        self.database_url = database_url
        self.backup_retention = max(1, backup_retention)
        self.echo = echo
        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None
        self._schema_ready = False

    def get_engine(self) -> AsyncEngine:
        """Get or create the async database engine."""
        if self._engine is None:
            kwargs = {"echo": self.echo, "pool_pre_ping": True}
            if not self.database_url.startswith("sqlite"):
                kwargs.update(pool_size=10, max_overflow=20, pool_timeout=30, pool_recycle=3600)
            self._engine = create_async_engine(self.database_url, **kwargs)
            logger.info("Database engine created")
        return self._engine

    def get_session_maker(self) -> async_sessionmaker[AsyncSession]:
        """Get or create the async session maker."""
        if self._session_maker is None:
            self._session_maker = async_sessionmaker(
                self.get_engine(),
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )
            logger.debug("Session maker created")
        return self._session_maker

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session.

        Commits on success, rolls back on any exception.
        """
        if not self._schema_ready:
            await self.init_db()
        async with self.get_session_maker()() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """Create tables if they don't exist."""
        logger.info("Initializing database schema")
        async with self.get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self._schema_ready = True

    async def close(self) -> None:
        """Close database connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None
            self._schema_ready = False

    # -------------------------------------------------------------------------
    # STORE CONTRACT
    # -------------------------------------------------------------------------

    async def exists(self, project_ref: str) -> bool:
        validate_project_ref(project_ref)
        try:
            async with self.session() as session:
                record = await session.get(ProjectRecord, project_ref)
                return record is not None
        except SQLAlchemyError as e:
            raise StoreIOError(f"Database error checking project '{project_ref}': {e}") from e

    async def load(self, project_ref: str) -> TaskCollection:
        validate_project_ref(project_ref)
        try:
            async with self.session() as session:
                record = await session.get(ProjectRecord, project_ref)
                payload = record.payload if record is not None else None
        except SQLAlchemyError as e:
            raise StoreIOError(f"Database error loading project '{project_ref}': {e}") from e

        if payload is None:
            raise StoreNotFoundError(project_ref)
        return decode_collection(project_ref, payload)

    async def save(self, project_ref: str, collection: TaskCollection) -> None:
        validate_project_ref(project_ref)
        collection.metadata["updatedAt"] = _utcnow().isoformat()
        payload = encode_collection(collection)

        try:
            async with self.session() as session:
                result = await session.execute(
                    select(ProjectRecord)
                    .where(ProjectRecord.project_ref == project_ref)
                    .with_for_update()
                )
                record = result.scalar_one_or_none()

                if record is None:
                    session.add(ProjectRecord(project_ref=project_ref, payload=payload, version=1))
                    version = 1
                else:
                    session.add(
                        BackupRecord(
                            project_ref=project_ref,
                            version=record.version,
                            payload=record.payload,
                        )
                    )
                    record.payload = payload
                    record.version += 1
                    version = record.version
                    await session.flush()
                    await self._prune_backups(session, project_ref)
        except SQLAlchemyError as e:
            raise StoreIOError(f"Database error saving project '{project_ref}': {e}") from e

        logger.debug(f"Saved project '{project_ref}' version {version}")

    async def _prune_backups(self, session: AsyncSession, project_ref: str) -> None:
        keep = await session.execute(
            select(BackupRecord.id)
            .where(BackupRecord.project_ref == project_ref)
            .order_by(BackupRecord.version.desc())
            .limit(self.backup_retention)
        )
        keep_ids = list(keep.scalars())
        await session.execute(
            delete(BackupRecord).where(
                BackupRecord.project_ref == project_ref,
                BackupRecord.id.not_in(keep_ids),
            )
        )

    async def backup_count(self, project_ref: str) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count())
                .select_from(BackupRecord)
                .where(BackupRecord.project_ref == project_ref)
            )
            return int(result.scalar_one())

    async def restore_latest_backup(self, project_ref: str) -> TaskCollection:
        """Restore the newest backup as a new version.

        Raises:
            StoreNotFoundError: If no backup exists.
        """
        async with self.session() as session:
            result = await session.execute(
                select(BackupRecord)
                .where(BackupRecord.project_ref == project_ref)
                .order_by(BackupRecord.version.desc())
                .limit(1)
            )
            backup = result.scalar_one_or_none()
            if backup is None:
                raise StoreNotFoundError(project_ref)
            collection = decode_collection(project_ref, backup.payload)
            record = await session.get(ProjectRecord, project_ref)
            if record is None:
                session.add(ProjectRecord(project_ref=project_ref, payload=backup.payload, version=1))
            else:
                record.payload = backup.payload
                record.version += 1
            await session.delete(backup)

        logger.warning(f"Restored project '{project_ref}' from backup version {backup.version}")
        return collection
