"""
Unit Tests - Refresh Coordinator
"""
import asyncio
from decimal import Decimal

import polars as pl
import pytest

from src.aggregation.artifacts import RefreshState
from src.aggregation.coordinator import RefreshCoordinator, RefreshMode, TriggerEvent
from src.aggregation.exceptions import ComputeError, NotFoundError
from src.aggregation.specs import AggregateSpec, AggregationFunction, GroupingStrategy, Measure


class GatedSource:
    """Wraps a source; fetches block until the gate opens"""

    def __init__(self, inner):
        self.inner = inner
        self.supports_change_tracking = inner.supports_change_tracking
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()
        self.fetches = 0

    async def fetch(self, paths, since=None):
        self.fetches += 1
        self.entered.set()
        await self.gate.wait()
        return await self.inner.fetch(paths, since)

    async def current_watermark(self):
        return await self.inner.current_watermark()


class FailingSource:
    """Wraps a source; fetches fail while `fail` is set or a path is poisoned"""

    def __init__(self, inner, poisoned=None):
        self.inner = inner
        self.supports_change_tracking = inner.supports_change_tracking
        self.fail = False
        self.poisoned = poisoned

    async def fetch(self, paths, since=None):
        if self.fail or self.poisoned in paths:
            raise ComputeError("warehouse unavailable")
        return await self.inner.fetch(paths, since)

    async def current_watermark(self):
        return await self.inner.current_watermark()


class SnapshotOnlySource(FailingSource):
    """A source that cannot read by watermark"""

    def __init__(self, inner):
        super().__init__(inner)
        self.supports_change_tracking = False


def _cube_spec() -> AggregateSpec:
    return AggregateSpec(
        name="cube_year_country",
        dimensions=["month.year", "customer.country"],
        measures=[Measure(name="total_billed", attribute="billing.billed_amount")],
        strategy=GroupingStrategy.CUBE,
    )


def _new_facts() -> pl.DataFrame:
    return pl.DataFrame({
        "bill_id": [3, 4, 5],
        "customer_id": [1, None, 1],
        "month_id": [202402, 202401, 202412],
        "billed_amount": [25.25, 5.00, 10.00],
        "quantity": [1, 1, 3],
    })


def _coordinator(registry, source, store, engine, *specs) -> RefreshCoordinator:
    for spec in specs:
        registry.register(spec)
    return RefreshCoordinator(registry, source, store, engine)


class TestRefresh:
    """Tests for RefreshCoordinator.refresh"""

    async def test_full_refresh(self, registry, frame_source, store, engine, flat_spec):
        """Test a full refresh publishes version 1 with the scenario totals"""
        coordinator = _coordinator(registry, frame_source, store, engine, flat_spec)

        outcome = await coordinator.refresh(flat_spec.spec_id)

        assert outcome.status == "completed"
        assert outcome.version == 1
        assert outcome.mode is RefreshMode.FULL
        assert store.query(flat_spec.spec_id) == [
            {"country": "US", "year": 2024, "grouping_id": 0, "total_billed": Decimal("150.00")}
        ]
        record = store.record(flat_spec.spec_id)
        assert record.state is RefreshState.IDLE
        assert record.refresh_count == 1
        assert store.get(flat_spec.spec_id).watermark == 2

    async def test_refresh_is_idempotent(self, registry, frame_source, store, engine, rollup_spec):
        """Test refreshing unchanged data gives the same fingerprint"""
        coordinator = _coordinator(registry, frame_source, store, engine, rollup_spec)

        first = await coordinator.refresh(rollup_spec.spec_id)
        fingerprint = store.get(rollup_spec.spec_id).fingerprint
        second = await coordinator.refresh(rollup_spec.spec_id)

        assert (first.version, second.version) == (1, 2)
        assert store.get(rollup_spec.spec_id).fingerprint == fingerprint

    async def test_unknown_spec(self, registry, frame_source, store, engine):
        """Test refreshing an unregistered spec"""
        coordinator = _coordinator(registry, frame_source, store, engine)

        with pytest.raises(NotFoundError):
            await coordinator.refresh("missing")

    async def test_failure_keeps_previous_artifact(self, registry, frame_source, store, engine, rollup_spec):
        """Test a failed refresh records the error and keeps serving the old artifact"""
        source = FailingSource(frame_source)
        coordinator = _coordinator(registry, source, store, engine, rollup_spec)
        await coordinator.refresh(rollup_spec.spec_id)
        before = store.get(rollup_spec.spec_id)

        source.fail = True
        with pytest.raises(ComputeError):
            await coordinator.refresh(rollup_spec.spec_id)

        assert store.get(rollup_spec.spec_id) is before
        record = store.record(rollup_spec.spec_id)
        assert record.state is RefreshState.IDLE
        assert "warehouse unavailable" in record.last_error
        assert record.failure_count == 1
        assert coordinator.in_flight() == []

        source.fail = False
        await coordinator.refresh(rollup_spec.spec_id)
        assert store.record(rollup_spec.spec_id).last_error is None
        assert store.get(rollup_spec.spec_id).version == 2

    async def test_concurrent_requests_coalesce(self, registry, frame_source, store, engine, rollup_spec):
        """Test a request during a running refresh joins it instead of queueing"""
        source = GatedSource(frame_source)
        coordinator = _coordinator(registry, source, store, engine, rollup_spec)

        first = await coordinator.refresh(rollup_spec.spec_id, wait=False)
        second = await coordinator.refresh(rollup_spec.spec_id)
        source.gate.set()
        await coordinator.wait_idle()

        assert first.status == "scheduled"
        assert second.status == "coalesced"
        assert second.coalesced
        assert source.fetches == 1
        assert store.get(rollup_spec.spec_id).version == 1

    async def test_reads_during_refresh(self, registry, frame_source, store, engine, rollup_spec):
        """Test readers see the previous complete artifact while a refresh runs"""
        source = GatedSource(frame_source)
        source.gate.set()
        coordinator = _coordinator(registry, source, store, engine, rollup_spec)
        await coordinator.refresh(rollup_spec.spec_id)
        rows_before = store.query(rollup_spec.spec_id)

        source.gate.clear()
        source.entered.clear()
        await coordinator.refresh(rollup_spec.spec_id, wait=False)
        await source.entered.wait()

        assert coordinator.state(rollup_spec.spec_id) is RefreshState.REFRESHING
        assert coordinator.in_flight() == [rollup_spec.spec_id]
        assert store.get(rollup_spec.spec_id).version == 1
        assert store.query(rollup_spec.spec_id) == rows_before

        source.gate.set()
        await coordinator.wait_idle()
        assert store.get(rollup_spec.spec_id).version == 2
        assert coordinator.state(rollup_spec.spec_id) is RefreshState.IDLE

    async def test_cancelled_caller_does_not_cancel_refresh(self, registry, frame_source, store, engine, rollup_spec):
        """Test a caller that stops waiting leaves the refresh running"""
        source = GatedSource(frame_source)
        coordinator = _coordinator(registry, source, store, engine, rollup_spec)

        caller = asyncio.create_task(coordinator.refresh(rollup_spec.spec_id))
        await source.entered.wait()
        caller.cancel()
        with pytest.raises(asyncio.CancelledError):
            await caller

        source.gate.set()
        await coordinator.wait_idle()
        assert store.get(rollup_spec.spec_id).version == 1

    async def test_removed_spec_is_skipped(self, registry, frame_source, store, engine, rollup_spec):
        """Test a spec removed mid-refresh is not published"""
        source = GatedSource(frame_source)
        coordinator = _coordinator(registry, source, store, engine, rollup_spec)

        caller = asyncio.create_task(coordinator.refresh(rollup_spec.spec_id))
        await source.entered.wait()
        registry.remove(rollup_spec.spec_id)
        source.gate.set()
        outcome = await caller

        assert outcome.status == "skipped"
        assert rollup_spec.spec_id not in store

    async def test_redefined_spec_is_not_coalesced(self, registry, frame_source, store, engine, rollup_spec):
        """Test a spec replaced mid-refresh gets its own refresh and only its own rows"""
        source = GatedSource(frame_source)
        coordinator = _coordinator(registry, source, store, engine, rollup_spec)
        redefined = AggregateSpec(
            name=rollup_spec.name,
            dimensions=["month.year", "month.quarter_name"],
            measures=[Measure(name="bills", attribute="billing.billed_amount", function=AggregationFunction.COUNT)],
        )

        first = asyncio.create_task(coordinator.refresh(rollup_spec.spec_id))
        await source.entered.wait()
        registry.remove(rollup_spec.spec_id)
        registry.register(redefined)
        second = asyncio.create_task(coordinator.refresh(redefined.spec_id))
        await asyncio.sleep(0)
        source.gate.set()

        assert (await first).status == "skipped"
        outcome = await second
        assert outcome.status == "completed"
        assert outcome.coalesced is False
        assert source.fetches == 2
        assert store.query(redefined.spec_id) == [
            {"year": 2024, "quarter_name": "Q1", "grouping_id": 0, "bills": 2}
        ]


class TestIncrementalRefresh:
    """Tests for incremental refresh"""

    async def test_incremental_equals_full(self, registry, frame_source, store, engine):
        """Test folding appended facts in matches recomputing from scratch"""
        spec = _cube_spec()
        coordinator = _coordinator(registry, frame_source, store, engine, spec)
        await coordinator.refresh(spec.spec_id)

        frame_source.append(_new_facts())
        outcome = await coordinator.refresh(spec.spec_id, mode=RefreshMode.INCREMENTAL)

        snapshot = await frame_source.fetch(spec.source_paths())
        expected = engine.materialize(spec, engine.compute(spec, snapshot.rows), version=99, watermark=5)
        artifact = store.get(spec.spec_id)

        assert outcome.mode is RefreshMode.INCREMENTAL
        assert outcome.version == 2
        assert artifact.rows == expected.rows
        assert artifact.fingerprint == expected.fingerprint
        assert artifact.watermark == 5

    async def test_incremental_without_new_facts(self, registry, frame_source, store, engine, rollup_spec):
        """Test nothing new since the watermark leaves the artifact as is"""
        coordinator = _coordinator(registry, frame_source, store, engine, rollup_spec)
        await coordinator.refresh(rollup_spec.spec_id)
        store.mark_stale(rollup_spec.spec_id)

        outcome = await coordinator.refresh(rollup_spec.spec_id, mode=RefreshMode.INCREMENTAL)

        assert outcome.status == "unchanged"
        assert outcome.version == 1
        assert not store.get(rollup_spec.spec_id).stale
        assert store.record(rollup_spec.spec_id).refresh_count == 2

    async def test_incremental_without_artifact_runs_full(self, registry, frame_source, store, engine, rollup_spec):
        """Test the first incremental refresh falls back to full"""
        coordinator = _coordinator(registry, frame_source, store, engine, rollup_spec)

        outcome = await coordinator.refresh(rollup_spec.spec_id, mode=RefreshMode.INCREMENTAL)

        assert outcome.mode is RefreshMode.FULL
        assert outcome.status == "completed"

    async def test_source_without_change_tracking_runs_full(self, registry, frame_source, store, engine, rollup_spec):
        """Test incremental requests against a snapshot-only source read everything"""
        coordinator = _coordinator(registry, SnapshotOnlySource(frame_source), store, engine, rollup_spec)
        await coordinator.refresh(rollup_spec.spec_id)
        frame_source.append(_new_facts())

        outcome = await coordinator.refresh(rollup_spec.spec_id, mode=RefreshMode.INCREMENTAL)

        assert outcome.mode is RefreshMode.FULL
        assert store.query(rollup_spec.spec_id, grouping_set=[])[0]["total_billed"] == Decimal("190.25")


class TestTriggers:
    """Tests for refresh_all and trigger events"""

    async def test_refresh_all_reports_failures(self, registry, frame_source, store, engine, flat_spec):
        """Test one failing spec does not stop the others"""
        by_category = AggregateSpec(
            name="by_category",
            dimensions=["customer.category"],
            measures=[Measure(name="total_billed", attribute="billing.billed_amount")],
        )
        source = FailingSource(frame_source, poisoned="customer.category")
        coordinator = _coordinator(registry, source, store, engine, flat_spec, by_category)

        outcomes = {outcome.spec_id: outcome.status for outcome in await coordinator.refresh_all()}

        assert outcomes == {"billing_by_country_year": "completed", "by_category": "failed"}
        assert store.record("by_category").failure_count == 1

    async def test_facts_appended_event(self, registry, frame_source, store, engine, flat_spec, rollup_spec):
        """Test a change notification refreshes every spec incrementally"""
        coordinator = _coordinator(registry, frame_source, store, engine, flat_spec, rollup_spec)
        await coordinator.refresh_all()
        frame_source.append(_new_facts())

        outcomes = await coordinator.on_trigger(TriggerEvent.facts_appended(origin="test"))
        assert {outcome.status for outcome in outcomes} == {"scheduled"}
        await coordinator.wait_idle()

        for spec in (flat_spec, rollup_spec):
            artifact = store.get(spec.spec_id)
            assert artifact.version == 2
            assert artifact.watermark == 5
            assert not artifact.stale
            assert store.record(spec.spec_id).last_mode == RefreshMode.INCREMENTAL.value

    async def test_single_spec_event(self, registry, frame_source, store, engine, flat_spec, rollup_spec):
        """Test an event naming one spec refreshes only that spec"""
        coordinator = _coordinator(registry, frame_source, store, engine, flat_spec, rollup_spec)

        outcomes = await coordinator.on_trigger(TriggerEvent(spec_id=rollup_spec.spec_id))
        await coordinator.wait_idle()

        assert [outcome.spec_id for outcome in outcomes] == [rollup_spec.spec_id]
        assert rollup_spec.spec_id in store
        assert flat_spec.spec_id not in store

