"""
Aggregation Engine

Computes the rows of an aggregate from a snapshot of joined fact/dimension
rows. Every grouping strategy is reduced to a list of dimension subsets, and
one grouping routine aggregates each subset with polars:

    FLAT          (a, b)
    ROLLUP(a, b)  (a, b), (a), ()
    CUBE(a, b)    (a, b), (a), (b), ()

Dimensions missing from a subset are filled with None and flagged in the
grouping id. Nulls produced by outer-join misses stay ordinary group values.

Each measure is aggregated NULL-safe into a partial state (sum, non-null
count, min, max). Decimal measures are carried as scaled integers so sums
and averages never pick up binary floating point drift.
"""

import numbers
from datetime import datetime
from decimal import ROUND_HALF_EVEN, Decimal, localcontext
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import polars as pl
import structlog

from src.warehouse.schema import Attribute, AttributeType, StarSchema
from .artifacts import (
    ArtifactCodec,
    GroupStates,
    MaterializedArtifact,
    MeasureState,
    group_sort_key,
)
from .exceptions import ComputeError
from .specs import GROUPING_ID, AggregateSpec, AggregationFunction, Measure

logger = structlog.get_logger(__name__)


def _value_column(measure: Measure) -> str:
    return f"__value_{measure.name}"


def _state_columns(measure: Measure) -> Tuple[str, str, str, str]:
    return (
        f"__sum_{measure.name}",
        f"__count_{measure.name}",
        f"__min_{measure.name}",
        f"__max_{measure.name}",
    )


def _limb_columns(measure: Measure) -> Tuple[str, str]:
    return f"__hi_{measure.name}", f"__lo_{measure.name}"


def _measure_dtype(attribute: Attribute) -> pl.DataType:
    if attribute.type is AttributeType.FLOAT:
        return pl.Float64
    # integers and scaled decimals
    return pl.Int64


def _is_exact(attribute: Attribute) -> bool:
    return attribute.type is not AttributeType.FLOAT


# Exact measures are summed as two Int64 columns: value = hi * 2**32 + lo with
# 0 <= lo < 2**32 and |hi| <= 2**31. Neither column can overflow below 2**31
# rows per group, and the halves are recombined as Python ints.
LIMB_BITS = 32
INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1


def _split(value: Optional[int]) -> Tuple[Optional[int], Optional[int]]:
    if value is None:
        return None, None
    return divmod(value, 1 << LIMB_BITS)


def _join(hi: Optional[int], lo: Optional[int]) -> int:
    return ((hi or 0) << LIMB_BITS) + (lo or 0)


def coerce_measure(value: Any, attribute: Attribute, spec_id: Optional[str] = None) -> Any:
    """
    Convert a source value into the engine representation of a measure.

    decimal -> integer scaled by 10**scale, integer -> int, float -> float.

    Raises:
        ComputeError: The value is not numeric or does not fit the declared type
    """
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (numbers.Real, Decimal)):
        raise ComputeError(
            f"Non-numeric value {value!r} for {attribute.type.value} attribute '{attribute.name}'",
            spec_id,
        )

    if attribute.type is AttributeType.DECIMAL:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        if not amount.is_finite():
            raise ComputeError(f"Non-finite value {value!r} for '{attribute.name}'", spec_id)
        return _checked(
            int(amount.scaleb(attribute.scale).to_integral_value(rounding=ROUND_HALF_EVEN)), value, attribute, spec_id
        )

    if attribute.type is AttributeType.INTEGER:
        if isinstance(value, numbers.Integral):
            return _checked(int(value), value, attribute, spec_id)
        if isinstance(value, Decimal):
            integral = value.is_finite() and value == value.to_integral_value()
        else:
            integral = float(value).is_integer()
        if not integral:
            raise ComputeError(f"Non-integer value {value!r} for integer attribute '{attribute.name}'", spec_id)
        return _checked(int(value), value, attribute, spec_id)

    return float(value)


def _checked(scaled: int, value: Any, attribute: Attribute, spec_id: Optional[str]) -> int:
    if not INT64_MIN <= scaled <= INT64_MAX:
        raise ComputeError(f"Value {value!r} for '{attribute.name}' is out of the 64-bit range", spec_id)
    return scaled


def _combine(left: MeasureState, right: MeasureState) -> MeasureState:
    def pick(fn, a, b):
        if a is None:
            return b
        if b is None:
            return a
        return fn(a, b)

    return MeasureState(
        sum=left.sum + right.sum,
        count=left.count + right.count,
        min=pick(min, left.min, right.min),
        max=pick(max, left.max, right.max),
    )


def merge_states(base: Mapping, delta: Mapping) -> GroupStates:
    """
    Fold the states of newly appended facts into existing states.

    Returns a new mapping; `base` is left untouched because it may still be
    served to readers.
    """
    merged: GroupStates = dict(base)
    for key, measures in delta.items():
        current = merged.get(key)
        if current is None:
            merged[key] = dict(measures)
        else:
            merged[key] = {name: _combine(current[name], state) for name, state in measures.items()}
    return merged


class AggregationEngine:
    """
    Computes aggregate states and artifacts for registered specs.

    Example:
        engine = AggregationEngine(billing_schema())
        states = engine.compute(spec, snapshot.rows)
        artifact = engine.materialize(spec, states, version=1, watermark=snapshot.watermark)
    """

    def __init__(self, schema: StarSchema, decimal_precision: int = 28):
        self.schema = schema
        self.decimal_precision = decimal_precision
        self.codec = ArtifactCodec(schema)

    def _dimensions(self, spec: AggregateSpec) -> List[Tuple[str, str, Attribute]]:
        return [
            (name, path, self.schema.resolve(path).attribute)
            for name, path in zip(spec.dimension_names, spec.dimensions)
        ]

    def _measures(self, spec: AggregateSpec) -> List[Tuple[Measure, Attribute]]:
        return [(m, self.schema.resolve(m.attribute).attribute) for m in spec.measures]

    # -------------------------------------------------------------------------
    # Computation
    # -------------------------------------------------------------------------

    def build_frame(self, spec: AggregateSpec, rows: Iterable[Mapping[str, Any]]) -> pl.DataFrame:
        """
        Load snapshot rows (keyed by attribute path) into a typed DataFrame
        with one column per dimension and one value column per measure.

        Raises:
            ComputeError: Non-numeric measure data or values that do not fit
                the declared column types
        """
        dimensions = self._dimensions(spec)
        measures = self._measures(spec)

        dim_values: Dict[str, List[Any]] = {name: [] for name, _, _ in dimensions}
        measure_values: Dict[str, List[Any]] = {_value_column(m): [] for m, _ in measures}
        limb_values: Dict[str, List[Any]] = {
            col: [] for m, attribute in measures if _is_exact(attribute) for col in _limb_columns(m)
        }

        for row in rows:
            for name, path, attribute in dimensions:
                dim_values[name].append(attribute.to_frame(row.get(path)))
            for measure, attribute in measures:
                value = coerce_measure(row.get(measure.attribute), attribute, spec.spec_id)
                measure_values[_value_column(measure)].append(value)
                if _is_exact(attribute):
                    hi_col, lo_col = _limb_columns(measure)
                    hi, lo = _split(value)
                    limb_values[hi_col].append(hi)
                    limb_values[lo_col].append(lo)

        try:
            columns = [
                pl.Series(name, dim_values[name], dtype=attribute.frame_dtype)
                for name, _, attribute in dimensions
            ]
            columns.extend(
                pl.Series(_value_column(m), measure_values[_value_column(m)], dtype=_measure_dtype(attribute))
                for m, attribute in measures
            )
            columns.extend(pl.Series(col, values, dtype=pl.Int64) for col, values in limb_values.items())
            return pl.DataFrame(columns)
        except (TypeError, ValueError, OverflowError, pl.exceptions.PolarsError) as e:
            raise ComputeError(f"Snapshot does not match the declared attribute types: {e}", spec.spec_id) from e

    def aggregate_frame(self, spec: AggregateSpec, frame: pl.DataFrame) -> pl.DataFrame:
        """
        Aggregate every grouping set of the spec and stack the results.

        Output columns: dimension names, grouping_id, then the state columns
        of each measure (sum, or its hi/lo halves for exact measures, then
        count, min and max). The frame must not be empty: a grand total over
        zero rows would invent a group that has no contributing facts.
        """
        names = spec.dimension_names
        state_columns = []
        aggregations = []
        for measure, attribute in self._measures(spec):
            value = pl.col(_value_column(measure))
            sum_col, count_col, min_col, max_col = _state_columns(measure)
            if _is_exact(attribute):
                sums = [pl.col(col).sum().alias(col) for col in _limb_columns(measure)]
                state_columns.extend(_limb_columns(measure))
            else:
                sums = [value.sum().alias(sum_col)]
                state_columns.append(sum_col)
            state_columns.extend([count_col, min_col, max_col])
            aggregations.extend(sums + [
                value.is_not_null().sum().cast(pl.Int64).alias(count_col),
                value.min().alias(min_col),
                value.max().alias(max_col),
            ])
        output_columns = names + [GROUPING_ID] + state_columns

        parts = []
        for subset in spec.expand_grouping_sets():
            if subset:
                grouped = frame.group_by(list(subset), maintain_order=True).agg(aggregations)
            else:
                grouped = frame.select(aggregations)

            fill = [
                pl.lit(None, dtype=frame.schema[name]).alias(name)
                for name in names if name not in subset
            ]
            grouped = grouped.with_columns(
                fill + [pl.lit(spec.grouping_id(subset), dtype=pl.Int64).alias(GROUPING_ID)]
            )
            parts.append(grouped.select(output_columns))

        return pl.concat(parts, how="vertical")

    def compute(self, spec: AggregateSpec, rows: Iterable[Mapping[str, Any]]) -> GroupStates:
        """
        Compute group states for a snapshot.

        Raises:
            ComputeError: Bad source data or an aggregation failure
        """
        frame = self.build_frame(spec, rows)
        states: GroupStates = {}
        if frame.height == 0:
            return states

        try:
            result = self.aggregate_frame(spec, frame)
        except pl.exceptions.PolarsError as e:
            raise ComputeError(f"Aggregation failed: {e}", spec.spec_id) from e

        dimensions = self._dimensions(spec)
        measures = self._measures(spec)

        for record in result.iter_rows(named=True):
            key = (
                record[GROUPING_ID],
                tuple(attribute.from_frame(record[name]) for name, _, attribute in dimensions),
            )
            states[key] = {m.name: self._state(record, m, attribute) for m, attribute in measures}

        logger.debug(
            "Aggregate computed",
            spec_id=spec.spec_id,
            input_rows=frame.height,
            groups=len(states),
            grouping_sets=len(spec.expand_grouping_sets()),
        )
        return states

    @staticmethod
    def _state(record: Mapping[str, Any], measure: Measure, attribute: Attribute) -> MeasureState:
        sum_col, count_col, min_col, max_col = _state_columns(measure)
        if _is_exact(attribute):
            total = _join(*(record[col] for col in _limb_columns(measure)))
        else:
            total = record[sum_col]
        return MeasureState(total, record[count_col], record[min_col], record[max_col])

    # -------------------------------------------------------------------------
    # Finalization
    # -------------------------------------------------------------------------

    def _unscale(self, value: Any, attribute: Attribute) -> Any:
        if value is None:
            return None
        if attribute.type is AttributeType.DECIMAL:
            return Decimal(value).scaleb(-attribute.scale)
        return value

    def finalize_measure(self, measure: Measure, attribute: Attribute, state: MeasureState) -> Any:
        """Final value of a measure from its partial state"""
        function = measure.function
        if function is AggregationFunction.COUNT:
            return state.count
        if state.count == 0:
            return None
        if function is AggregationFunction.SUM:
            return self._unscale(state.sum, attribute)
        if function is AggregationFunction.MIN:
            return self._unscale(state.min, attribute)
        if function is AggregationFunction.MAX:
            return self._unscale(state.max, attribute)

        # AVG
        if attribute.type is AttributeType.FLOAT:
            return state.sum / state.count
        with localcontext() as ctx:
            ctx.prec = self.decimal_precision
            return Decimal(state.sum).scaleb(-attribute.scale) / Decimal(state.count)

    def finalize(self, spec: AggregateSpec, states: Mapping) -> List[Dict[str, Any]]:
        """Result rows in canonical group order"""
        names = spec.dimension_names
        measures = self._measures(spec)
        rows = []
        for key in sorted(states, key=group_sort_key):
            grouping_id, values = key
            row: Dict[str, Any] = dict(zip(names, values))
            row[GROUPING_ID] = grouping_id
            for measure, attribute in measures:
                row[measure.name] = self.finalize_measure(measure, attribute, states[key][measure.name])
            rows.append(row)
        return rows

    def materialize(
        self,
        spec: AggregateSpec,
        states: Mapping,
        version: int,
        watermark: Optional[int],
        computed_at: Optional[datetime] = None,
    ) -> MaterializedArtifact:
        """Build a complete, immutable artifact from group states"""
        return MaterializedArtifact(
            spec_id=spec.spec_id,
            version=version,
            computed_at=computed_at or datetime.utcnow(),
            watermark=watermark,
            states=dict(states),
            rows=tuple(self.finalize(spec, states)),
            fingerprint=self.codec.fingerprint(spec, states),
        )
