"""
Warehouse Sources

Read side of the storage collaborator: joined fact/dimension rows for a set
of attribute paths, optionally limited to facts appended after a watermark.

- SqlWarehouseSource: one SELECT with LEFT OUTER JOINs against the warehouse
  database, so every row of a snapshot comes from one consistent read
- FrameWarehouseSource: polars frames, e.g. parquet exports of the curated
  zone of the data lake
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import polars as pl
import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.aggregation.exceptions import ComputeError
from src.config import get_settings
from src.database.connection import get_session_factory
from .schema import DimensionTable, SchemaError, StarSchema

logger = structlog.get_logger(__name__)

_SEQUENCE = "__sequence"


@dataclass(frozen=True)
class Snapshot:
    """Joined rows keyed by attribute path, plus the highest sequence seen"""
    rows: List[Dict[str, Any]]
    watermark: Optional[int]
    taken_at: datetime = field(default_factory=datetime.utcnow)

    def __len__(self) -> int:
        return len(self.rows)


class WarehouseSource(Protocol):
    """Query interface of the storage collaborator"""

    supports_change_tracking: bool

    async def fetch(self, paths: Sequence[str], since: Optional[int] = None) -> Snapshot: ...

    async def current_watermark(self) -> Optional[int]: ...


def _resolve_all(schema: StarSchema, paths: Sequence[str]):
    try:
        return [schema.resolve(path) for path in paths]
    except SchemaError as e:
        raise ComputeError(f"Cannot read attribute: {e}") from e


class SqlWarehouseSource:
    """
    Reads the billing star schema through the async SQLAlchemy engine.

    Incremental reads take facts with `bill_id` above the watermark, so fact
    loading must be single-writer: ids have to become visible in increasing
    order. A lower id committed after a higher one is never picked up
    incrementally; a FULL refresh includes it.

    Example:
        source = SqlWarehouseSource(billing_schema())
        snapshot = await source.fetch(["customer.country", "billed_amount"])
    """

    supports_change_tracking = True

    def __init__(
        self,
        schema: StarSchema,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        self.schema = schema
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory or get_session_factory()

    def build_query(self, paths: Sequence[str], since: Optional[int] = None):
        """SELECT of the requested paths, labelled c0..cN, plus the sequence column"""
        fact = self.schema.fact
        sequence = fact.table.c[fact.sequence]
        resolved = _resolve_all(self.schema, paths)

        joined: Dict[str, DimensionTable] = {}
        columns = [sequence.label(_SEQUENCE)]
        for i, item in enumerate(resolved):
            columns.append(item.attribute.column.label(f"c{i}"))
            if item.dimension is not None:
                joined[item.dimension.name] = item.dimension

        source = fact.table
        for dimension in joined.values():
            source = source.outerjoin(
                dimension.table,
                fact.table.c[dimension.foreign_key] == dimension.table.c[dimension.key],
            )

        query = select(*columns).select_from(source)
        if since is not None:
            query = query.where(sequence > since)
        return query.order_by(sequence)

    async def fetch(self, paths: Sequence[str], since: Optional[int] = None) -> Snapshot:
        """
        Raises:
            ComputeError: The query failed
        """
        query = self.build_query(paths, since)
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                records = result.all()
        except SQLAlchemyError as e:
            logger.error("Warehouse query failed", error=str(e), since=since)
            raise ComputeError(f"Warehouse query failed: {e}") from e

        rows = []
        watermark = since
        for record in records:
            sequence = record[0]
            rows.append(dict(zip(paths, record[1:])))
            if watermark is None or sequence > watermark:
                watermark = sequence

        logger.debug("Warehouse snapshot fetched", rows=len(rows), since=since, watermark=watermark)
        return Snapshot(rows=rows, watermark=watermark)

    async def current_watermark(self) -> Optional[int]:
        fact = self.schema.fact
        try:
            async with self.session_factory() as session:
                result = await session.execute(select(func.max(fact.table.c[fact.sequence])))
                return result.scalar()
        except SQLAlchemyError as e:
            raise ComputeError(f"Watermark query failed: {e}") from e


class FrameWarehouseSource:
    """
    Star schema held as polars frames, one per table, with the table's
    column names.

    Example:
        source = FrameWarehouseSource.from_parquet(billing_schema())
        snapshot = await source.fetch(["month.year", "billed_amount"])
    """

    supports_change_tracking = True

    def __init__(self, schema: StarSchema, fact_frame: pl.DataFrame,
                 dimension_frames: Optional[Mapping[str, pl.DataFrame]] = None):
        self.schema = schema
        self.fact_frame = fact_frame
        self.dimension_frames = dict(dimension_frames or {})

    @classmethod
    def from_parquet(cls, schema: StarSchema, directory: Optional[str] = None) -> "FrameWarehouseSource":
        """Load the curated parquet exports of the fact and dimension tables"""
        lake = get_settings().data_lake
        root = Path(directory or lake.curated_path)
        fact_frame = pl.read_parquet(root / lake.fact_file)
        dimension_frames = {
            "customer": pl.read_parquet(root / lake.customer_file),
            "month": pl.read_parquet(root / lake.month_file),
        }
        logger.info("Loaded warehouse exports", path=str(root), facts=fact_frame.height)
        return cls(schema, fact_frame, dimension_frames)

    def append(self, facts: pl.DataFrame) -> None:
        """
        Append fact rows; their sequence values must exceed the current ones.

        Raises:
            ValueError: A new sequence value is not above the current watermark
        """
        sequence = self.schema.fact.sequence
        current = self.fact_frame[sequence].max() if self.fact_frame.height else None
        lowest = facts[sequence].min() if facts.height else None
        if current is not None and lowest is not None and lowest <= current:
            raise ValueError(f"Appended {sequence} {lowest} is not above the current watermark {current}")
        self.fact_frame = pl.concat([self.fact_frame, facts], how="vertical_relaxed")

    def _join(self, frame: pl.DataFrame, dimension: DimensionTable, attributes: List[str]) -> pl.DataFrame:
        dim_frame = self.dimension_frames.get(dimension.name)
        if dim_frame is None:
            raise ComputeError(f"No frame loaded for dimension '{dimension.name}'")
        key = f"__key_{dimension.name}"
        right = dim_frame.select(
            [pl.col(dimension.key).alias(key)]
            + [pl.col(attr).alias(f"{dimension.name}.{attr}") for attr in attributes]
        )
        return frame.join(right, left_on=dimension.foreign_key, right_on=key, how="left")

    async def fetch(self, paths: Sequence[str], since: Optional[int] = None) -> Snapshot:
        """
        Raises:
            ComputeError: Missing frames or columns
        """
        fact = self.schema.fact
        resolved = _resolve_all(self.schema, paths)

        wanted: Dict[str, List[str]] = {}
        for item in resolved:
            if item.dimension is not None:
                wanted.setdefault(item.dimension.name, []).append(item.name)

        try:
            frame = self.fact_frame
            if since is not None:
                frame = frame.filter(pl.col(fact.sequence) > since)
            for name, attributes in wanted.items():
                frame = self._join(frame, self.schema.dimensions[name], sorted(set(attributes)))

            columns = [pl.col(fact.sequence).alias(_SEQUENCE)]
            for i, item in enumerate(resolved):
                source_column = item.name if item.on_fact else f"{item.dimension.name}.{item.name}"
                columns.append(pl.col(source_column).alias(f"c{i}"))
            frame = frame.select(columns).sort(_SEQUENCE)
        except pl.exceptions.PolarsError as e:
            raise ComputeError(f"Frame query failed: {e}") from e

        rows = [
            {path: record[f"c{i}"] for i, path in enumerate(paths)}
            for record in frame.iter_rows(named=True)
        ]
        watermark = frame[_SEQUENCE].max() if frame.height else since
        return Snapshot(rows=rows, watermark=watermark)

    async def current_watermark(self) -> Optional[int]:
        if self.fact_frame.height == 0:
            return None
        return self.fact_frame[self.schema.fact.sequence].max()
