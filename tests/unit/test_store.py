"""
Unit Tests - Materialized Store and Artifact Backends
"""
import fnmatch
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from src.aggregation.artifacts import RefreshRecord, RefreshState
from src.aggregation.backends import (
    MemoryArtifactBackend,
    RedisArtifactBackend,
    SqlArtifactBackend,
    create_backend,
)
from src.aggregation.exceptions import NotFoundError, PersistenceError
from src.aggregation.registry import AggregateRegistry
from src.aggregation.specs import AggregateSpec, GroupingStrategy, Measure
from src.aggregation.store import MaterializedStore


class FailingBackend(MemoryArtifactBackend):
    """Memory backend whose artifact writes can be switched off"""

    def __init__(self):
        super().__init__()
        self.fail = False

    async def save_artifact(self, stored):
        if self.fail:
            raise PersistenceError("disk full", stored.spec_id)
        await super().save_artifact(stored)


class RemovingBackend(MemoryArtifactBackend):
    """Memory backend that unregisters the spec while its artifact is written"""

    def __init__(self, registry):
        super().__init__()
        self.registry = registry

    async def save_artifact(self, stored):
        await super().save_artifact(stored)
        self.registry.remove(stored.spec_id)


class FakeRedis:
    """The handful of redis commands RedisNamespace uses"""

    def __init__(self):
        self.data = {}

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value):
        self.data[key] = value

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    async def keys(self, pattern):
        return [key for key in self.data if fnmatch.fnmatchcase(key, pattern)]

    async def mget(self, keys):
        return [self.data.get(key) for key in keys]


def _cube_spec() -> AggregateSpec:
    return AggregateSpec(
        name="backend_cube",
        dimensions=["month.year", "customer.country"],
        measures=[Measure(name="total_billed", attribute="billing.billed_amount")],
        strategy=GroupingStrategy.CUBE,
    )


@pytest.fixture
async def rollup_store(store, registry, engine, rollup_spec, warehouse_rows):
    """Store with version 1 of ROLLUP(country) over the warehouse rows"""
    registry.register(rollup_spec)
    artifact = engine.materialize(rollup_spec, engine.compute(rollup_spec, warehouse_rows), version=1, watermark=6)
    await store.put(rollup_spec.spec_id, artifact)
    return store


class TestMaterializedStore:
    """Tests for MaterializedStore"""

    def test_get_before_materialized(self, store, registry, rollup_spec):
        """Test reading a spec that was never refreshed"""
        registry.register(rollup_spec)

        with pytest.raises(NotFoundError):
            store.get(rollup_spec.spec_id)
        assert store.peek(rollup_spec.spec_id) is None

    async def test_put_and_get(self, rollup_store, memory_backend, rollup_spec):
        """Test a published artifact is served and persisted"""
        artifact = rollup_store.get(rollup_spec.spec_id)

        assert artifact.version == 1
        assert rollup_spec.spec_id in rollup_store
        assert memory_backend.artifacts[rollup_spec.spec_id].fingerprint == artifact.fingerprint

    async def test_put_requires_newer_version(self, rollup_store, rollup_spec):
        """Test an artifact cannot replace one of the same version"""
        current = rollup_store.get(rollup_spec.spec_id)

        with pytest.raises(ValueError):
            await rollup_store.put(rollup_spec.spec_id, current)

    async def test_failed_persist_keeps_previous(self, registry, engine, rollup_spec, warehouse_rows):
        """Test a backend failure leaves the previous artifact visible"""
        backend = FailingBackend()
        store = MaterializedStore(backend, registry, engine.codec)
        registry.register(rollup_spec)
        states = engine.compute(rollup_spec, warehouse_rows)
        await store.put(rollup_spec.spec_id, engine.materialize(rollup_spec, states, version=1, watermark=6))

        backend.fail = True
        with pytest.raises(PersistenceError):
            await store.put(rollup_spec.spec_id, engine.materialize(rollup_spec, {}, version=2, watermark=6))

        assert store.get(rollup_spec.spec_id).version == 1
        assert store.get(rollup_spec.spec_id).group_count == 4

    async def test_put_after_removal_during_write(self, registry, engine, rollup_spec, warehouse_rows):
        """Test an artifact whose spec is removed while it is written is not published"""
        backend = RemovingBackend(registry)
        store = MaterializedStore(backend, registry, engine.codec)
        registry.register(rollup_spec)
        artifact = engine.materialize(rollup_spec, engine.compute(rollup_spec, warehouse_rows), version=1, watermark=6)

        published = await store.put(rollup_spec.spec_id, artifact)

        assert published is False
        assert rollup_spec.spec_id not in store
        assert backend.artifacts == {}

    async def test_query_filter(self, rollup_store, rollup_spec):
        """Test equality filters"""
        rows = rollup_store.query(rollup_spec.spec_id, filter={"country": "US"})

        assert rows == [{"country": "US", "grouping_id": 0, "total_billed": Decimal("60.60")}]

    async def test_query_callable_filter(self, rollup_store, rollup_spec):
        """Test predicate filters"""
        rows = rollup_store.query(rollup_spec.spec_id, filter=lambda row: row["total_billed"] > Decimal("50"))

        assert {row["country"] for row in rows} == {"US", "DE", None}

    async def test_query_without_subtotals(self, rollup_store, rollup_spec):
        """Test subtotals=False keeps only detail rows, including unknown values"""
        rows = rollup_store.query(rollup_spec.spec_id, subtotals=False)

        assert len(rows) == 3
        assert all(row["grouping_id"] == 0 for row in rows)

    async def test_query_grouping_set(self, rollup_store, rollup_spec):
        """Test selecting the grand total tier"""
        rows = rollup_store.query(rollup_spec.spec_id, grouping_set=[])

        assert rows == [{"country": None, "grouping_id": 1, "total_billed": Decimal("156.50")}]

    async def test_query_order_and_limit(self, rollup_store, rollup_spec):
        """Test ordering descending with a limit"""
        rows = rollup_store.query(rollup_spec.spec_id, subtotals=False, order_by=["-total_billed"], limit=2)

        assert [row["country"] for row in rows] == ["DE", "US"]

    async def test_query_order_nulls_last(self, rollup_store, rollup_spec):
        """Test None sorts after values in both directions"""
        ascending = rollup_store.query(rollup_spec.spec_id, subtotals=False, order_by=["country"])
        descending = rollup_store.query(rollup_spec.spec_id, subtotals=False, order_by=["-country"])

        assert [row["country"] for row in ascending] == ["DE", "US", None]
        assert [row["country"] for row in descending] == ["US", "DE", None]

    async def test_query_unknown_columns(self, rollup_store, rollup_spec):
        """Test filtering or ordering on missing columns fails"""
        with pytest.raises(ValueError):
            rollup_store.query(rollup_spec.spec_id, filter={"planet": "Mars"})
        with pytest.raises(ValueError):
            rollup_store.query(rollup_spec.spec_id, order_by=["planet"])
        with pytest.raises(ValueError):
            rollup_store.query(rollup_spec.spec_id, grouping_set=["planet"])

    async def test_query_returns_copies(self, rollup_store, rollup_spec):
        """Test callers cannot modify served rows"""
        rows = rollup_store.query(rollup_spec.spec_id)
        rows[0]["total_billed"] = Decimal("0")

        assert rollup_store.query(rollup_spec.spec_id)[0]["total_billed"] != Decimal("0")

    async def test_mark_stale(self, rollup_store, rollup_spec):
        """Test stale flag toggles without changing the version"""
        assert rollup_store.mark_stale(rollup_spec.spec_id)
        assert rollup_store.get(rollup_spec.spec_id).stale
        assert rollup_store.get(rollup_spec.spec_id).version == 1
        assert rollup_store.mark_stale(rollup_spec.spec_id, stale=False)
        assert not rollup_store.get(rollup_spec.spec_id).stale
        assert not rollup_store.mark_stale("missing")

    async def test_staleness(self, rollup_store, rollup_spec):
        """Test staleness is measured from the last successful refresh"""
        succeeded = datetime(2024, 1, 1, 12, 0, 0)
        record = RefreshRecord(spec_id=rollup_spec.spec_id).succeeded("full", succeeded, 0.1)
        await rollup_store.save_record(record)

        assert rollup_store.staleness(rollup_spec.spec_id, now=succeeded + timedelta(minutes=5)) == timedelta(minutes=5)
        with pytest.raises(NotFoundError):
            rollup_store.staleness("missing")

    async def test_retire(self, rollup_store, memory_backend, rollup_spec):
        """Test retiring drops the artifact everywhere"""
        await rollup_store.retire(rollup_spec.spec_id)

        assert rollup_spec.spec_id not in rollup_store
        assert rollup_spec.spec_id not in memory_backend.artifacts

    async def test_restore(self, rollup_store, memory_backend, schema, engine, rollup_spec):
        """Test a new store serves persisted artifacts without recomputing"""
        interrupted = RefreshRecord(spec_id=rollup_spec.spec_id).started("full", datetime.utcnow())
        await rollup_store.save_record(interrupted)

        registry = AggregateRegistry(schema)
        registry.register(rollup_spec)
        restored_store = MaterializedStore(memory_backend, registry, engine.codec)

        assert await restored_store.restore(engine) == 1
        restored = restored_store.get(rollup_spec.spec_id)
        original = rollup_store.get(rollup_spec.spec_id)
        assert restored.fingerprint == original.fingerprint
        assert restored.rows == original.rows
        assert restored.version == 1
        assert restored_store.record(rollup_spec.spec_id).state is RefreshState.IDLE

    async def test_restore_skips_unregistered(self, rollup_store, memory_backend, schema, engine):
        """Test artifacts of specs that are no longer registered are ignored"""
        restored_store = MaterializedStore(memory_backend, AggregateRegistry(schema), engine.codec)

        assert await restored_store.restore(engine) == 0

    async def test_restore_skips_corrupt(self, rollup_store, memory_backend, schema, engine, rollup_spec):
        """Test undecodable payloads are skipped"""
        stored = memory_backend.artifacts[rollup_spec.spec_id]
        memory_backend.artifacts[rollup_spec.spec_id] = replace(stored, states="{not json")

        registry = AggregateRegistry(schema)
        registry.register(rollup_spec)
        restored_store = MaterializedStore(memory_backend, registry, engine.codec)

        assert await restored_store.restore(engine) == 0
        assert rollup_spec.spec_id not in restored_store


class TestArtifactBackends:
    """Tests for the sql and redis artifact backends"""

    async def _round_trip(self, backend, registry, engine, spec, rows):
        registry.register(spec)
        store = MaterializedStore(backend, registry, engine.codec)
        artifact = engine.materialize(spec, engine.compute(spec, rows), version=3, watermark=6)
        await store.put(spec.spec_id, artifact)
        await store.save_record(RefreshRecord(spec_id=spec.spec_id).failed("boom", 0.5))
        await backend.save_spec(spec.spec_id, spec.model_dump_json())

        restored = MaterializedStore(backend, registry, engine.codec)
        assert await restored.restore(engine) == 1
        assert restored.get(spec.spec_id).rows == artifact.rows
        assert restored.get(spec.spec_id).watermark == 6
        assert restored.record(spec.spec_id).last_error == "boom"
        assert restored.record(spec.spec_id).failure_count == 1
        assert spec.spec_id in await backend.load_specs()

        await restored.retire(spec.spec_id)
        await backend.delete_spec(spec.spec_id)
        assert await backend.load_artifacts() == []
        assert await backend.load_records() == []
        assert await backend.load_specs() == {}

    async def test_sql_backend(self, session_factory, registry, engine, warehouse_rows):
        """Test artifacts, records and specs survive in SQL tables"""
        await self._round_trip(SqlArtifactBackend(session_factory), registry, engine, _cube_spec(), warehouse_rows)

    async def test_redis_backend(self, registry, engine, warehouse_rows):
        """Test artifacts, records and specs survive as redis JSON values"""
        client = FakeRedis()
        backend = RedisArtifactBackend(namespace="test", client=client)

        await self._round_trip(backend, registry, engine, _cube_spec(), warehouse_rows)

    async def test_redis_namespaces_are_separate(self):
        """Test spec keys do not leak into the artifact namespace"""
        client = FakeRedis()
        backend = RedisArtifactBackend(namespace="test", client=client)
        await backend.save_spec("a", "{}")

        assert await backend.load_artifacts() == []
        assert await backend.load_specs() == {"a": "{}"}

    async def test_create_backend(self, session_factory):
        """Test backend selection by name"""
        assert create_backend("memory").name == "memory"
        assert create_backend("sql", session_factory).name == "sql"
        assert create_backend("redis").name == "redis"
        with pytest.raises(ValueError):
            create_backend("sql")
        with pytest.raises(ValueError):
            create_backend("s3")
