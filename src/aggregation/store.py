"""
Materialized Store

Serves the current artifact of every spec. A refresh builds a complete
artifact off to the side and `put` makes it visible with a single dictionary
assignment, so a reader holding the previous artifact keeps a consistent,
complete view and never waits on a refresh.

The store also owns the refresh records and their persistence through the
configured artifact backend.
"""

from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import structlog

from .artifacts import ArtifactCodec, MaterializedArtifact, RefreshRecord, rows_as_list
from .backends import ArtifactBackend
from .exceptions import NotFoundError, PersistenceError
from .registry import AggregateRegistry
from .specs import GROUPING_ID, AggregateSpec

logger = structlog.get_logger(__name__)

RowFilter = Union[Mapping[str, Any], Callable[[Mapping[str, Any]], bool]]


def _sorted_rows(rows: List[Dict[str, Any]], order_by: Sequence[str]) -> List[Dict[str, Any]]:
    """Sort by several columns; a leading '-' sorts descending, None always last"""
    for column in reversed(order_by):
        descending = column.startswith("-")
        name = column.lstrip("-")
        if descending:
            rows.sort(key=lambda row: (row.get(name) is not None, row.get(name) if row.get(name) is not None else 0),
                      reverse=True)
        else:
            rows.sort(key=lambda row: (row.get(name) is None, row.get(name) if row.get(name) is not None else 0))
    return rows


class MaterializedStore:
    """
    Current artifacts and refresh records, keyed by spec id.

    Example:
        store = MaterializedStore(MemoryArtifactBackend(), registry, engine.codec)
        await store.put(spec_id, artifact)
        rows = store.query(spec_id, filter={"country": "US"}, subtotals=False)
    """

    def __init__(self, backend: ArtifactBackend, registry: AggregateRegistry, codec: ArtifactCodec):
        self.backend = backend
        self.registry = registry
        self.codec = codec
        self._artifacts: Dict[str, MaterializedArtifact] = {}
        self._records: Dict[str, RefreshRecord] = {}

    def __contains__(self, spec_id: str) -> bool:
        return spec_id in self._artifacts

    # -------------------------------------------------------------------------
    # Artifacts
    # -------------------------------------------------------------------------

    def get(self, spec_id: str) -> MaterializedArtifact:
        """
        Current artifact, never blocking on an in-flight refresh.

        Raises:
            NotFoundError: Nothing has been materialized for the spec yet
        """
        artifact = self._artifacts.get(spec_id)
        if artifact is None:
            raise NotFoundError("No materialized artifact", spec_id)
        return artifact

    def peek(self, spec_id: str) -> Optional[MaterializedArtifact]:
        return self._artifacts.get(spec_id)

    async def put(self, spec_id: str, artifact: MaterializedArtifact, spec: Optional[AggregateSpec] = None) -> bool:
        """
        Persist an artifact, then make it the one readers see.

        `spec` is the definition the artifact was computed from (the
        registered one by default). When the registry no longer holds that
        exact definition once the write returns, whatever is stored for the
        old definition is retired and False is returned.

        Raises:
            PersistenceError: The backend write failed; the previous artifact
                stays visible
            ValueError: The artifact is not newer than the current one
        """
        current = self._artifacts.get(spec_id)
        if current is not None and artifact.version <= current.version:
            raise ValueError(
                f"Artifact version {artifact.version} for '{spec_id}' is not newer than {current.version}"
            )

        spec = spec or self.registry.get(spec_id)
        stored = self.codec.to_stored(spec, artifact)
        await self.backend.save_artifact(stored)

        if self.registry.find(spec_id) is not spec:
            logger.warning("Spec removed or replaced while its artifact was saved", spec_id=spec_id)
            await self.retire(spec_id)
            return False

        self._artifacts[spec_id] = artifact
        logger.info(
            "Artifact published",
            spec_id=spec_id,
            version=artifact.version,
            groups=artifact.group_count,
            watermark=artifact.watermark,
            fingerprint=artifact.fingerprint[:12],
        )
        return True

    def mark_stale(self, spec_id: str, stale: bool = True) -> bool:
        """Flag the current artifact as behind its source (or caught up); False if there is none"""
        artifact = self._artifacts.get(spec_id)
        if artifact is None:
            return False
        if artifact.stale != stale:
            self._artifacts[spec_id] = replace(artifact, stale=stale)
        return True

    def staleness(self, spec_id: str, now: Optional[datetime] = None) -> timedelta:
        """
        Time since the last successful refresh.

        Raises:
            NotFoundError: The spec was never refreshed
        """
        now = now or datetime.utcnow()
        record = self._records.get(spec_id)
        if record is not None and record.last_success_at is not None:
            return now - record.last_success_at
        artifact = self._artifacts.get(spec_id)
        if artifact is None:
            raise NotFoundError("Spec has never been refreshed", spec_id)
        return now - artifact.computed_at

    def query(
        self,
        spec_id: str,
        filter: Optional[RowFilter] = None,
        order_by: Optional[Sequence[str]] = None,
        subtotals: bool = True,
        grouping_set: Optional[Sequence[str]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Rows of the current artifact.

        Args:
            filter: Mapping of column -> value (equality on every item) or a
                predicate called with each row
            order_by: Column names, '-' prefix for descending
            subtotals: False keeps only the finest grouping tier
            grouping_set: Keep only the tier grouping by exactly these dimensions
            limit: Maximum number of rows returned

        Raises:
            NotFoundError: Unknown spec or nothing materialized
            ValueError: Filter or ordering on a column the aggregate does not have
        """
        spec = self.registry.get(spec_id)
        # One pointer read: the whole query sees a single artifact version
        artifact = self.get(spec_id)
        columns = set(spec.dimension_names) | {m.name for m in spec.measures} | {GROUPING_ID}

        if isinstance(filter, Mapping):
            unknown = sorted(set(filter) - columns)
            if unknown:
                raise ValueError(f"Unknown filter columns {unknown} for '{spec_id}'")
            wanted = dict(filter)

            def predicate(row):
                return all(row.get(key) == value for key, value in wanted.items())
        else:
            predicate = filter

        tier = None
        if grouping_set is not None:
            unknown = sorted(set(grouping_set) - set(spec.dimension_names))
            if unknown:
                raise ValueError(f"Unknown grouping dimensions {unknown} for '{spec_id}'")
            tier = spec.grouping_id(spec.normalize_subset(grouping_set))

        rows = []
        for row in rows_as_list(artifact):
            if not subtotals and row[GROUPING_ID] != 0:
                continue
            if tier is not None and row[GROUPING_ID] != tier:
                continue
            if predicate is not None and not predicate(row):
                continue
            rows.append(row)

        if order_by:
            unknown = sorted({column.lstrip("-") for column in order_by} - columns)
            if unknown:
                raise ValueError(f"Unknown order_by columns {unknown} for '{spec_id}'")
            rows = _sorted_rows(rows, order_by)

        if limit is not None:
            rows = rows[:limit]
        return rows

    # -------------------------------------------------------------------------
    # Refresh records
    # -------------------------------------------------------------------------

    def record(self, spec_id: str) -> RefreshRecord:
        """Refresh record of a spec; a blank IDLE record if it never refreshed"""
        return self._records.get(spec_id) or RefreshRecord(spec_id=spec_id)

    async def save_record(self, record: RefreshRecord) -> None:
        """
        Raises:
            PersistenceError: The backend write failed; the in-memory record
                is already updated
        """
        self._records[record.spec_id] = record
        await self.backend.save_record(record)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def retire(self, spec_id: str) -> None:
        """Drop the artifact and record of a removed spec"""
        self._artifacts.pop(spec_id, None)
        self._records.pop(spec_id, None)
        await self.backend.delete_artifact(spec_id)
        logger.info("Artifact retired", spec_id=spec_id)

    async def restore(self, engine) -> int:
        """
        Load persisted artifacts and records of registered specs so serving
        resumes without recomputing. Returns the number of artifacts restored.

        Artifacts whose decoded states no longer match their fingerprint are
        skipped; the next refresh rebuilds them. A record left REFRESHING by
        an interrupted process is reset to IDLE.
        """
        restored = 0
        for stored in await self.backend.load_artifacts():
            if stored.spec_id not in self.registry:
                logger.warning("Skipping artifact of unregistered spec", spec_id=stored.spec_id)
                continue
            spec = self.registry.get(stored.spec_id)
            try:
                states = self.codec.decode_states(spec, stored.states)
            except PersistenceError as e:
                logger.error("Skipping undecodable artifact", spec_id=stored.spec_id, error=str(e))
                continue

            artifact = engine.materialize(
                spec,
                states,
                version=stored.version,
                watermark=stored.watermark,
                computed_at=stored.computed_at,
            )
            if artifact.fingerprint != stored.fingerprint:
                logger.error(
                    "Skipping artifact with mismatched fingerprint",
                    spec_id=stored.spec_id,
                    expected=stored.fingerprint[:12],
                    actual=artifact.fingerprint[:12],
                )
                continue
            self._artifacts[stored.spec_id] = artifact
            restored += 1

        for record in await self.backend.load_records():
            if record.spec_id not in self.registry:
                continue
            if record.in_progress:
                logger.warning("Resetting interrupted refresh", spec_id=record.spec_id)
                record = record.settled()
                await self.backend.save_record(record)
            self._records[record.spec_id] = record

        logger.info("Materialized store restored", artifacts=restored, records=len(self._records))
        return restored
