"""
Refresh Coordinator

Drives the per-spec refresh state machine:

    IDLE -> REFRESHING -> IDLE                 (success)
    IDLE -> REFRESHING -> FAILED -> IDLE       (error recorded, prior artifact kept)

At most one refresh per spec is in flight. A request that arrives while one
is running is coalesced into it instead of being queued. Aggregation runs in
a worker thread so readers on the event loop are never held up, and the
store swap is the only point where a refresh becomes visible.

The coordinator has no retry policy and no timer: trigger sources (HTTP,
CLI, Prefect flow, change notifications) decide when and how often to call it.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING, Dict, List, Optional, Protocol

import structlog

from .artifacts import RefreshState
from .engine import AggregationEngine, merge_states
from .exceptions import AggregationError
from .registry import AggregateRegistry
from .specs import AggregateSpec
from .store import MaterializedStore

if TYPE_CHECKING:
    from src.warehouse.source import WarehouseSource

logger = structlog.get_logger(__name__)


class RefreshMode(str, Enum):
    """How a refresh reads the source"""
    FULL = "full"
    INCREMENTAL = "incremental"


@dataclass(frozen=True)
class RefreshOutcome:
    """
    Result of a refresh request.

    status: completed | unchanged | coalesced | scheduled | skipped
    """
    spec_id: str
    status: str
    mode: RefreshMode
    version: Optional[int] = None
    coalesced: bool = False
    groups: Optional[int] = None
    duration_seconds: Optional[float] = None


@dataclass(frozen=True)
class TriggerEvent:
    """A request to refresh one spec (or every spec when spec_id is None)"""
    spec_id: Optional[str] = None
    mode: RefreshMode = RefreshMode.FULL
    origin: str = "manual"

    @classmethod
    def facts_appended(cls, origin: str = "warehouse") -> "TriggerEvent":
        """Change notification: new facts landed, fold them into every aggregate"""
        return cls(spec_id=None, mode=RefreshMode.INCREMENTAL, origin=origin)


class RefreshTrigger(Protocol):
    """Anything that reacts to trigger events"""

    async def on_trigger(self, event: TriggerEvent) -> List[RefreshOutcome]: ...


class RefreshCoordinator:
    """
    Example:
        coordinator = RefreshCoordinator(registry, source, store, engine)
        outcome = await coordinator.refresh("billing_by_country_category")
        await coordinator.on_trigger(TriggerEvent.facts_appended())
    """

    def __init__(
        self,
        registry: AggregateRegistry,
        source: "WarehouseSource",
        store: MaterializedStore,
        engine: AggregationEngine,
    ):
        self.registry = registry
        self.source = source
        self.store = store
        self.engine = engine
        self._inflight: Dict[str, asyncio.Task] = {}
        # definition each in-flight refresh was started from
        self._inflight_specs: Dict[str, AggregateSpec] = {}

    def state(self, spec_id: str) -> RefreshState:
        return self.store.record(spec_id).state

    def in_flight(self) -> List[str]:
        return sorted(self._inflight)

    async def refresh(
        self,
        spec_id: str,
        mode: RefreshMode = RefreshMode.FULL,
        wait: bool = True,
    ) -> RefreshOutcome:
        """
        Refresh one spec.

        Returns immediately with coalesced=True when a refresh of the same
        definition is already running. A refresh still running for a removed
        or replaced definition is waited out first; it does not publish.
        With wait=False the refresh is scheduled and the call returns at once;
        with wait=True the caller gets the outcome or the refresh error.
        Cancelling the awaiting caller does not cancel the refresh itself.

        Raises:
            NotFoundError: Unknown spec
            ComputeError: Source or aggregation failure (wait=True only)
            PersistenceError: The artifact could not be saved (wait=True only)
        """
        mode = RefreshMode(mode)
        spec = self.registry.get(spec_id)

        running = self._inflight.get(spec_id)
        while running is not None and self._inflight_specs.get(spec_id) is not spec:
            logger.info("Waiting for refresh of a replaced definition", spec_id=spec_id)
            await asyncio.wait({running})
            spec = self.registry.get(spec_id)
            running = self._inflight.get(spec_id)

        if running is not None:
            logger.info("Refresh coalesced", spec_id=spec_id, mode=mode.value)
            return RefreshOutcome(spec_id=spec_id, status="coalesced", mode=mode, coalesced=True)

        # No await between the check above and this insert
        task = asyncio.get_running_loop().create_task(self._run(spec, mode), name=f"refresh:{spec_id}")
        self._inflight[spec_id] = task
        self._inflight_specs[spec_id] = spec
        task.add_done_callback(partial(self._finished, spec_id))

        if not wait:
            return RefreshOutcome(spec_id=spec_id, status="scheduled", mode=mode)
        return await asyncio.shield(task)

    async def refresh_all(self, mode: RefreshMode = RefreshMode.FULL, wait: bool = True) -> List[RefreshOutcome]:
        """
        Refresh every registered spec concurrently.

        Failures are logged and recorded per spec; they do not stop the other
        refreshes and are reported as status "failed".
        """
        mode = RefreshMode(mode)
        spec_ids = [spec.spec_id for spec in self.registry.list()]
        results = await asyncio.gather(
            *(self.refresh(spec_id, mode=mode, wait=wait) for spec_id in spec_ids),
            return_exceptions=True,
        )

        outcomes = []
        for spec_id, result in zip(spec_ids, results):
            if isinstance(result, AggregationError):
                outcomes.append(RefreshOutcome(spec_id=spec_id, status="failed", mode=mode))
            elif isinstance(result, BaseException):
                raise result
            else:
                outcomes.append(result)
        return outcomes

    async def on_trigger(self, event: TriggerEvent) -> List[RefreshOutcome]:
        """Schedule the refreshes an event asks for without waiting on them"""
        logger.info("Refresh triggered", spec_id=event.spec_id, mode=event.mode.value, origin=event.origin)
        if event.spec_id is not None:
            return [await self.refresh(event.spec_id, mode=event.mode, wait=False)]

        if event.mode is RefreshMode.INCREMENTAL:
            for spec in self.registry.list():
                self.store.mark_stale(spec.spec_id)
        return await self.refresh_all(mode=event.mode, wait=False)

    async def settle(self, spec_id: str) -> None:
        """Wait for the refresh of the spec that is in flight now, if any; its errors are not raised here"""
        running = self._inflight.get(spec_id)
        if running is not None:
            await asyncio.wait({running})

    async def wait_idle(self) -> None:
        """Wait until no refresh is in flight; refresh errors are not raised here"""
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    def _finished(self, spec_id: str, task: asyncio.Task) -> None:
        if self._inflight.get(spec_id) is task:
            del self._inflight[spec_id]
            del self._inflight_specs[spec_id]
        # Retrieve the exception so unawaited scheduled refreshes do not warn
        if not task.cancelled():
            task.exception()

    def _is_current(self, spec: AggregateSpec) -> bool:
        """The registry still holds this exact definition"""
        return self.registry.find(spec.spec_id) is spec

    def _discarded(self, spec_id: str, mode: RefreshMode) -> RefreshOutcome:
        logger.warning("Spec removed or replaced during refresh, discarding result", spec_id=spec_id)
        return RefreshOutcome(spec_id=spec_id, status="skipped", mode=mode)

    async def _run(self, spec: AggregateSpec, mode: RefreshMode) -> RefreshOutcome:
        spec_id = spec.spec_id
        started = time.perf_counter()
        log = logger.bind(spec_id=spec_id, mode=mode.value)

        record = self.store.record(spec_id).started(mode.value, datetime.utcnow())
        try:
            await self.store.save_record(record)
            log.info("Refresh started")
            outcome = await self._refresh(spec, mode, started)
        except Exception as e:
            duration = time.perf_counter() - started
            log.error(
                "Refresh failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 3),
            )
            if self._is_current(spec):
                await self._record_failure(record.failed(str(e), duration), log)
            raise

        log.info(
            "Refresh completed",
            status=outcome.status,
            mode_used=outcome.mode.value,
            version=outcome.version,
            groups=outcome.groups,
            duration_seconds=outcome.duration_seconds,
        )
        return outcome

    async def _record_failure(self, failed, log) -> None:
        """FAILED, then back to IDLE with the error kept for callers to inspect"""
        try:
            await self.store.save_record(failed)
            await self.store.save_record(failed.settled())
        except AggregationError as e:
            # The refresh error is what the caller needs to see
            log.error("Saving failed refresh record failed", error=str(e))

    async def _refresh(self, spec: AggregateSpec, mode: RefreshMode, started: float) -> RefreshOutcome:
        spec_id = spec.spec_id
        current = self.store.peek(spec_id)

        effective = mode
        if mode is RefreshMode.INCREMENTAL and (
            not getattr(self.source, "supports_change_tracking", False)
            or current is None
            or current.watermark is None
        ):
            logger.info("Incremental refresh falling back to full", spec_id=spec_id)
            effective = RefreshMode.FULL

        since = current.watermark if effective is RefreshMode.INCREMENTAL else None
        snapshot = await self.source.fetch(spec.source_paths(), since=since)
        states = await asyncio.to_thread(self.engine.compute, spec, snapshot.rows)

        if not self._is_current(spec):
            return self._discarded(spec_id, effective)

        if effective is RefreshMode.INCREMENTAL and not states:
            # Nothing appended since the watermark
            self.store.mark_stale(spec_id, stale=False)
            duration = time.perf_counter() - started
            await self.store.save_record(
                self.store.record(spec_id).succeeded(effective.value, datetime.utcnow(), duration)
            )
            return RefreshOutcome(
                spec_id=spec_id,
                status="unchanged",
                mode=effective,
                version=current.version,
                groups=current.group_count,
                duration_seconds=round(duration, 3),
            )

        if effective is RefreshMode.INCREMENTAL:
            states = merge_states(current.states, states)

        version = (current.version if current is not None else 0) + 1
        artifact = await asyncio.to_thread(
            self.engine.materialize, spec, states, version, snapshot.watermark
        )

        if not self._is_current(spec) or not await self.store.put(spec_id, artifact, spec):
            return self._discarded(spec_id, effective)

        duration = time.perf_counter() - started
        await self.store.save_record(
            self.store.record(spec_id).succeeded(effective.value, datetime.utcnow(), duration)
        )
        return RefreshOutcome(
            spec_id=spec_id,
            status="completed",
            mode=effective,
            version=artifact.version,
            groups=artifact.group_count,
            duration_seconds=round(duration, 3),
        )
