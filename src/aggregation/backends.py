"""
Artifact Backends

Durable homes for registered specs, materialized artifacts and refresh
records, so a restarted process can serve without recomputing:

- SqlArtifactBackend: warehouse database tables (default)
- RedisArtifactBackend: JSON values under a redis key namespace
- MemoryArtifactBackend: process-local, for development and tests

Every backend raises PersistenceError for storage failures.
"""

from typing import Dict, List, Optional, Protocol

import structlog
from redis.exceptions import RedisError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.database.models import AggregateSpecRow, MaterializedArtifactRow, RefreshRecordRow
from src.serving.cache import RedisNamespace
from .artifacts import RefreshRecord, RefreshState, StoredArtifact
from .exceptions import PersistenceError

logger = structlog.get_logger(__name__)


class ArtifactBackend(Protocol):
    """Persistence interface used by the store and the service"""

    name: str

    async def load_specs(self) -> Dict[str, str]: ...

    async def save_spec(self, spec_id: str, definition: str) -> None: ...

    async def delete_spec(self, spec_id: str) -> None: ...

    async def load_artifacts(self) -> List[StoredArtifact]: ...

    async def save_artifact(self, stored: StoredArtifact) -> None: ...

    async def load_records(self) -> List[RefreshRecord]: ...

    async def save_record(self, record: RefreshRecord) -> None: ...

    async def delete_artifact(self, spec_id: str) -> None: ...


class MemoryArtifactBackend:
    """Keeps encoded state in dictionaries; nothing survives the process"""

    name = "memory"

    def __init__(self):
        self.specs: Dict[str, str] = {}
        self.artifacts: Dict[str, StoredArtifact] = {}
        self.records: Dict[str, RefreshRecord] = {}

    async def load_specs(self) -> Dict[str, str]:
        return dict(self.specs)

    async def save_spec(self, spec_id: str, definition: str) -> None:
        self.specs[spec_id] = definition

    async def delete_spec(self, spec_id: str) -> None:
        self.specs.pop(spec_id, None)

    async def load_artifacts(self) -> List[StoredArtifact]:
        return list(self.artifacts.values())

    async def save_artifact(self, stored: StoredArtifact) -> None:
        self.artifacts[stored.spec_id] = stored

    async def load_records(self) -> List[RefreshRecord]:
        return list(self.records.values())

    async def save_record(self, record: RefreshRecord) -> None:
        self.records[record.spec_id] = record

    async def delete_artifact(self, spec_id: str) -> None:
        self.artifacts.pop(spec_id, None)
        self.records.pop(spec_id, None)


class SqlArtifactBackend:
    """
    Stores state in the aggregate_specs, materialized_artifacts and
    refresh_records tables. Each write is its own transaction, so an artifact
    row is replaced as a whole or not at all.
    """

    name = "sql"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def load_specs(self) -> Dict[str, str]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(AggregateSpecRow))
                return {row.spec_id: row.definition for row in result.scalars().all()}
        except SQLAlchemyError as e:
            raise PersistenceError(f"Loading specs failed: {e}") from e

    async def save_spec(self, spec_id: str, definition: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.merge(AggregateSpecRow(spec_id=spec_id, definition=definition))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Saving spec failed: {e}", spec_id) from e

    async def delete_spec(self, spec_id: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(delete(AggregateSpecRow).where(AggregateSpecRow.spec_id == spec_id))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Deleting spec failed: {e}", spec_id) from e

    async def load_artifacts(self) -> List[StoredArtifact]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(MaterializedArtifactRow))
                return [
                    StoredArtifact(
                        spec_id=row.spec_id,
                        version=row.version,
                        computed_at=row.computed_at,
                        watermark=row.watermark,
                        fingerprint=row.fingerprint,
                        group_count=row.group_count or 0,
                        states=row.states,
                    )
                    for row in result.scalars().all()
                ]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Loading artifacts failed: {e}") from e

    async def save_artifact(self, stored: StoredArtifact) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.merge(MaterializedArtifactRow(
                        spec_id=stored.spec_id,
                        version=stored.version,
                        computed_at=stored.computed_at,
                        watermark=stored.watermark,
                        fingerprint=stored.fingerprint,
                        group_count=stored.group_count,
                        states=stored.states,
                    ))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Saving artifact failed: {e}", stored.spec_id) from e

    async def load_records(self) -> List[RefreshRecord]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(RefreshRecordRow))
                return [
                    RefreshRecord(
                        spec_id=row.spec_id,
                        state=RefreshState(row.state),
                        last_success_at=row.last_success_at,
                        last_attempt_at=row.last_attempt_at,
                        last_error=row.last_error,
                        last_mode=row.last_mode,
                        last_duration_seconds=row.last_duration_seconds,
                        refresh_count=row.refresh_count or 0,
                        failure_count=row.failure_count or 0,
                    )
                    for row in result.scalars().all()
                ]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Loading refresh records failed: {e}") from e

    async def save_record(self, record: RefreshRecord) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.merge(RefreshRecordRow(
                        spec_id=record.spec_id,
                        state=record.state.value,
                        last_success_at=record.last_success_at,
                        last_attempt_at=record.last_attempt_at,
                        last_error=record.last_error,
                        last_mode=record.last_mode,
                        last_duration_seconds=record.last_duration_seconds,
                        refresh_count=record.refresh_count,
                        failure_count=record.failure_count,
                        in_progress=record.in_progress,
                    ))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Saving refresh record failed: {e}", record.spec_id) from e

    async def delete_artifact(self, spec_id: str) -> None:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await session.execute(
                        delete(MaterializedArtifactRow).where(MaterializedArtifactRow.spec_id == spec_id)
                    )
                    await session.execute(
                        delete(RefreshRecordRow).where(RefreshRecordRow.spec_id == spec_id)
                    )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Deleting artifact failed: {e}", spec_id) from e


class RedisArtifactBackend:
    """
    Stores state as JSON values:

        {namespace}:spec:{spec_id}
        {namespace}:artifact:{spec_id}
        {namespace}:record:{spec_id}

    A single SET replaces an artifact, so readers of the key never see a
    partial value.
    """

    name = "redis"

    def __init__(self, namespace: str = "aggregates", client=None):
        self.specs = RedisNamespace(f"{namespace}:spec", client)
        self.artifacts = RedisNamespace(f"{namespace}:artifact", client)
        self.records = RedisNamespace(f"{namespace}:record", client)

    async def load_specs(self) -> Dict[str, str]:
        try:
            return {spec_id: value["definition"] for spec_id, value in (await self.specs.all()).items()}
        except RedisError as e:
            raise PersistenceError(f"Loading specs failed: {e}") from e

    async def save_spec(self, spec_id: str, definition: str) -> None:
        try:
            await self.specs.set(spec_id, {"definition": definition})
        except RedisError as e:
            raise PersistenceError(f"Saving spec failed: {e}", spec_id) from e

    async def delete_spec(self, spec_id: str) -> None:
        try:
            await self.specs.delete(spec_id)
        except RedisError as e:
            raise PersistenceError(f"Deleting spec failed: {e}", spec_id) from e

    async def load_artifacts(self) -> List[StoredArtifact]:
        try:
            values = await self.artifacts.all()
        except RedisError as e:
            raise PersistenceError(f"Loading artifacts failed: {e}") from e
        return [StoredArtifact.from_dict(value) for value in values.values()]

    async def save_artifact(self, stored: StoredArtifact) -> None:
        try:
            await self.artifacts.set(stored.spec_id, stored.to_dict())
        except RedisError as e:
            raise PersistenceError(f"Saving artifact failed: {e}", stored.spec_id) from e

    async def load_records(self) -> List[RefreshRecord]:
        try:
            values = await self.records.all()
        except RedisError as e:
            raise PersistenceError(f"Loading refresh records failed: {e}") from e
        return [RefreshRecord.from_dict(value) for value in values.values()]

    async def save_record(self, record: RefreshRecord) -> None:
        try:
            await self.records.set(record.spec_id, record.to_dict())
        except RedisError as e:
            raise PersistenceError(f"Saving refresh record failed: {e}", record.spec_id) from e

    async def delete_artifact(self, spec_id: str) -> None:
        try:
            await self.artifacts.delete(spec_id)
            await self.records.delete(spec_id)
        except RedisError as e:
            raise PersistenceError(f"Deleting artifact failed: {e}", spec_id) from e


def create_backend(kind: str, session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
                   namespace: str = "aggregates") -> ArtifactBackend:
    """Backend for a configured name (sql, redis, memory)"""
    if kind == "sql":
        if session_factory is None:
            raise ValueError("The sql backend needs a session factory")
        return SqlArtifactBackend(session_factory)
    if kind == "redis":
        return RedisArtifactBackend(namespace=namespace)
    if kind == "memory":
        logger.warning("Using the memory artifact backend, artifacts will not survive a restart")
        return MemoryArtifactBackend()
    raise ValueError(f"Unknown artifact backend '{kind}'")
