"""
Aggregation Module

Aggregate specs, the grouping engine, the materialized store and the
refresh coordinator. Service wiring lives in src.aggregation.service.
"""
from .artifacts import MaterializedArtifact, MeasureState, RefreshRecord, RefreshState, is_subtotal
from .backends import MemoryArtifactBackend, RedisArtifactBackend, SqlArtifactBackend, create_backend
from .coordinator import RefreshCoordinator, RefreshMode, RefreshOutcome, RefreshTrigger, TriggerEvent
from .engine import AggregationEngine, merge_states
from .exceptions import (
    AggregationError,
    ComputeError,
    InvalidSpecError,
    NotFoundError,
    PersistenceError,
)
from .registry import AggregateRegistry
from .specs import GROUPING_ID, AggregateSpec, AggregationFunction, GroupingStrategy, Measure
from .store import MaterializedStore

__all__ = [
    "MaterializedArtifact",
    "MeasureState",
    "RefreshRecord",
    "RefreshState",
    "is_subtotal",
    "MemoryArtifactBackend",
    "RedisArtifactBackend",
    "SqlArtifactBackend",
    "create_backend",
    "RefreshCoordinator",
    "RefreshMode",
    "RefreshOutcome",
    "RefreshTrigger",
    "TriggerEvent",
    "AggregationEngine",
    "merge_states",
    "AggregationError",
    "ComputeError",
    "InvalidSpecError",
    "NotFoundError",
    "PersistenceError",
    "AggregateRegistry",
    "GROUPING_ID",
    "AggregateSpec",
    "AggregationFunction",
    "GroupingStrategy",
    "Measure",
    "MaterializedStore",
]
