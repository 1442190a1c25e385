"""
Materialized Artifacts and Refresh Records

Data model for what the store serves (MaterializedArtifact), the bookkeeping
kept per spec (RefreshRecord), and the canonical encoding used to persist
artifacts and fingerprint them.

An artifact keeps, per group, the partial aggregate state of every measure
(NULL-safe sum, non-null count, min, max). Final measure values are derived
from those states, and states of disjoint fact sets can be merged, which is
what incremental refresh relies on.
"""

import hashlib
import json
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Mapping, NamedTuple, Optional, Tuple

from src.warehouse.schema import StarSchema
from .exceptions import PersistenceError
from .specs import GROUPING_ID, AggregateSpec


class MeasureState(NamedTuple):
    """Partial aggregate of one measure within one group"""
    sum: Any
    count: int
    min: Any
    max: Any


# (grouping_id, dimension values in declaration order)
GroupKey = Tuple[int, Tuple[Any, ...]]
GroupStates = Dict[GroupKey, Dict[str, MeasureState]]


def group_sort_key(key: GroupKey) -> Tuple:
    """Total order over group keys; None sorts after values"""
    grouping_id, values = key
    return grouping_id, tuple((value is None, 0 if value is None else value) for value in values)


@dataclass(frozen=True)
class MaterializedArtifact:
    """
    Computed output of one aggregate spec.

    Instances are never mutated; a refresh builds a new one and the store
    swaps it in.
    """
    spec_id: str
    version: int
    computed_at: datetime
    watermark: Optional[int]
    states: Mapping[GroupKey, Mapping[str, MeasureState]]
    rows: Tuple[Dict[str, Any], ...]
    fingerprint: str
    stale: bool = False

    @property
    def group_count(self) -> int:
        return len(self.rows)

    def age(self, now: Optional[datetime] = None) -> timedelta:
        return (now or datetime.utcnow()) - self.computed_at

    def summary(self) -> Dict[str, Any]:
        return {
            "spec_id": self.spec_id,
            "version": self.version,
            "computed_at": self.computed_at,
            "watermark": self.watermark,
            "groups": self.group_count,
            "fingerprint": self.fingerprint,
            "stale": self.stale,
        }


def is_subtotal(row: Mapping[str, Any], dimension: str, spec: AggregateSpec) -> bool:
    """
    True when `dimension` is rolled up in this row (the ALL marker).

    A None in a row whose grouping id keeps the dimension is an unknown value
    from an outer-join miss, not a subtotal.
    """
    return dimension in spec.absent_dimensions(row[GROUPING_ID])


class RefreshState(str, Enum):
    """Per-spec refresh state machine"""
    IDLE = "idle"
    REFRESHING = "refreshing"
    FAILED = "failed"


@dataclass(frozen=True)
class RefreshRecord:
    """Refresh bookkeeping for one spec"""
    spec_id: str
    state: RefreshState = RefreshState.IDLE
    last_success_at: Optional[datetime] = None
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_mode: Optional[str] = None
    last_duration_seconds: Optional[float] = None
    refresh_count: int = 0
    failure_count: int = 0

    @property
    def in_progress(self) -> bool:
        return self.state is RefreshState.REFRESHING

    def started(self, mode: str, at: datetime) -> "RefreshRecord":
        return replace(self, state=RefreshState.REFRESHING, last_attempt_at=at, last_mode=mode)

    def succeeded(self, mode: str, at: datetime, duration: float) -> "RefreshRecord":
        return replace(
            self,
            state=RefreshState.IDLE,
            last_success_at=at,
            last_error=None,
            last_mode=mode,
            last_duration_seconds=duration,
            refresh_count=self.refresh_count + 1,
        )

    def failed(self, error: str, duration: float) -> "RefreshRecord":
        return replace(
            self,
            state=RefreshState.FAILED,
            last_error=error,
            last_duration_seconds=duration,
            failure_count=self.failure_count + 1,
        )

    def settled(self) -> "RefreshRecord":
        """Back to IDLE, keeping whatever error was recorded"""
        return replace(self, state=RefreshState.IDLE)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["in_progress"] = self.in_progress
        for key in ("last_success_at", "last_attempt_at"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RefreshRecord":
        def _dt(value):
            return datetime.fromisoformat(value) if isinstance(value, str) else value

        return cls(
            spec_id=data["spec_id"],
            state=RefreshState(data.get("state", RefreshState.IDLE.value)),
            last_success_at=_dt(data.get("last_success_at")),
            last_attempt_at=_dt(data.get("last_attempt_at")),
            last_error=data.get("last_error"),
            last_mode=data.get("last_mode"),
            last_duration_seconds=data.get("last_duration_seconds"),
            refresh_count=data.get("refresh_count") or 0,
            failure_count=data.get("failure_count") or 0,
        )


@dataclass(frozen=True)
class StoredArtifact:
    """Encoded artifact as kept by a backend"""
    spec_id: str
    version: int
    computed_at: datetime
    watermark: Optional[int]
    fingerprint: str
    group_count: int
    states: str = field(repr=False)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["computed_at"] = self.computed_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StoredArtifact":
        computed_at = data["computed_at"]
        return cls(
            spec_id=data["spec_id"],
            version=data["version"],
            computed_at=datetime.fromisoformat(computed_at) if isinstance(computed_at, str) else computed_at,
            watermark=data.get("watermark"),
            fingerprint=data["fingerprint"],
            group_count=data.get("group_count") or 0,
            states=data["states"],
        )


class ArtifactCodec:
    """
    Canonical JSON encoding of group states.

    Groups are written in `group_sort_key` order with sorted object keys, so
    equal states always encode to the same bytes. Decimal measures are kept
    as scaled integers in the states, which JSON carries exactly.
    """

    def __init__(self, schema: StarSchema):
        self.schema = schema

    def encode_states(self, spec: AggregateSpec, states: Mapping[GroupKey, Mapping[str, MeasureState]]) -> str:
        attributes = [self.schema.resolve(path).attribute for path in spec.dimensions]
        groups = []
        for key in sorted(states, key=group_sort_key):
            grouping_id, values = key
            groups.append({
                "g": grouping_id,
                "k": [attr.to_json(value) for attr, value in zip(attributes, values)],
                "m": {name: list(state) for name, state in states[key].items()},
            })
        return json.dumps(groups, sort_keys=True, separators=(",", ":"))

    def decode_states(self, spec: AggregateSpec, payload: str) -> GroupStates:
        attributes = [self.schema.resolve(path).attribute for path in spec.dimensions]
        try:
            groups = json.loads(payload)
            states: GroupStates = {}
            for group in groups:
                values = tuple(attr.from_json(value) for attr, value in zip(attributes, group["k"]))
                states[(group["g"], values)] = {
                    name: MeasureState(*state) for name, state in group["m"].items()
                }
        except (ValueError, KeyError, TypeError) as e:
            raise PersistenceError(f"Stored artifact cannot be decoded: {e}", spec.spec_id) from e
        return states

    def fingerprint(self, spec: AggregateSpec, states: Mapping[GroupKey, Mapping[str, MeasureState]]) -> str:
        return hashlib.sha256(self.encode_states(spec, states).encode("utf-8")).hexdigest()

    def to_stored(self, spec: AggregateSpec, artifact: MaterializedArtifact) -> StoredArtifact:
        return StoredArtifact(
            spec_id=artifact.spec_id,
            version=artifact.version,
            computed_at=artifact.computed_at,
            watermark=artifact.watermark,
            fingerprint=artifact.fingerprint,
            group_count=artifact.group_count,
            states=self.encode_states(spec, artifact.states),
        )


def rows_as_list(artifact: MaterializedArtifact) -> List[Dict[str, Any]]:
    """Copies of the artifact rows, safe to hand to callers"""
    return [dict(row) for row in artifact.rows]
