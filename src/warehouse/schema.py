"""
Star Schema Descriptor

Describes the shape of the warehouse the aggregate engine reads: one fact
table, the dimensions it references by foreign key, and the typed attributes
of each. Descriptors are derived from the SQLAlchemy tables so the ORM stays
the single source of truth for column types.

Attribute paths:
- "customer.country"      dimension attribute (one hop from the fact table)
- "billing.billed_amount" fact attribute, qualified
- "billed_amount"         fact attribute, bare
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import polars as pl
from sqlalchemy import Boolean, Column, Date, DateTime, Float, Integer, Numeric, Table

from src.database.models import DimCustomer, DimMonth, FactBilling


class SchemaError(ValueError):
    """An attribute path does not resolve against the star schema"""


class AttributeType(str, Enum):
    """Logical attribute types"""
    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    DECIMAL = "decimal"
    DATE = "date"
    DATETIME = "datetime"
    BOOLEAN = "boolean"

    @property
    def is_numeric(self) -> bool:
        return self in (AttributeType.INTEGER, AttributeType.FLOAT, AttributeType.DECIMAL)


def attribute_type_for(column: Column) -> Tuple[AttributeType, int]:
    """Map a SQLAlchemy column type to (AttributeType, decimal scale)"""
    sql_type = column.type
    # Order matters: Float subclasses Numeric, DateTime is not a Date
    if isinstance(sql_type, Boolean):
        return AttributeType.BOOLEAN, 0
    if isinstance(sql_type, Integer):
        return AttributeType.INTEGER, 0
    if isinstance(sql_type, Float):
        return AttributeType.FLOAT, 0
    if isinstance(sql_type, Numeric):
        return AttributeType.DECIMAL, sql_type.scale or 0
    if isinstance(sql_type, DateTime):
        return AttributeType.DATETIME, 0
    if isinstance(sql_type, Date):
        return AttributeType.DATE, 0
    return AttributeType.STRING, 0


@dataclass(frozen=True, eq=False)
class Attribute:
    """A typed column of a fact or dimension table"""
    name: str
    type: AttributeType
    column: Column
    scale: int = 0

    @property
    def is_numeric(self) -> bool:
        return self.type.is_numeric

    @property
    def frame_dtype(self) -> pl.DataType:
        """polars dtype used when the attribute is a grouping column"""
        return _FRAME_DTYPES[self.type]

    def to_frame(self, value: Any) -> Any:
        """Value as loaded into a grouping column"""
        if value is None:
            return None
        if self.type is AttributeType.DECIMAL:
            return str(value)
        return value

    def from_frame(self, value: Any) -> Any:
        """Value read back from a grouping column"""
        if value is None:
            return None
        if self.type is AttributeType.DECIMAL:
            return Decimal(value)
        return value

    def to_json(self, value: Any) -> Any:
        if value is None:
            return None
        if self.type in (AttributeType.DATE, AttributeType.DATETIME):
            return value.isoformat()
        if self.type is AttributeType.DECIMAL:
            return str(value)
        return value

    def from_json(self, value: Any) -> Any:
        if value is None:
            return None
        if self.type is AttributeType.DATE:
            return date.fromisoformat(value)
        if self.type is AttributeType.DATETIME:
            return datetime.fromisoformat(value)
        if self.type is AttributeType.DECIMAL:
            return Decimal(value)
        return value

    @classmethod
    def from_column(cls, column: Column) -> "Attribute":
        attr_type, scale = attribute_type_for(column)
        return cls(name=column.name, type=attr_type, column=column, scale=scale)


_FRAME_DTYPES = {
    AttributeType.STRING: pl.Utf8,
    AttributeType.INTEGER: pl.Int64,
    AttributeType.FLOAT: pl.Float64,
    AttributeType.DECIMAL: pl.Utf8,
    AttributeType.DATE: pl.Date,
    AttributeType.DATETIME: pl.Datetime,
    AttributeType.BOOLEAN: pl.Boolean,
}


def _attributes_of(table: Table) -> Dict[str, Attribute]:
    return {column.name: Attribute.from_column(column) for column in table.columns}


@dataclass(frozen=True, eq=False)
class DimensionTable:
    """A dimension reachable from the fact table through `foreign_key`"""
    name: str
    table: Table
    key: str
    foreign_key: str
    attributes: Dict[str, Attribute] = field(default_factory=dict)


@dataclass(frozen=True, eq=False)
class FactTable:
    """
    The fact table; `sequence` is the monotonically increasing change watermark column.

    Rows must become visible in sequence order (one loader at a time). Rows
    committed below an already seen watermark are missed by incremental
    refreshes until the next FULL refresh.
    """
    name: str
    table: Table
    key: str
    sequence: str
    attributes: Dict[str, Attribute] = field(default_factory=dict)


@dataclass(frozen=True, eq=False)
class ResolvedAttribute:
    """An attribute path resolved against the schema"""
    path: str
    attribute: Attribute
    dimension: Optional[DimensionTable] = None

    @property
    def name(self) -> str:
        return self.attribute.name

    @property
    def on_fact(self) -> bool:
        return self.dimension is None


class StarSchema:
    """
    Fact table plus its dimensions.

    The join graph is a single hop: fact.foreign_key -> dimension.key,
    joined LEFT OUTER so facts without a matching dimension row are kept.
    """

    def __init__(self, fact: FactTable, dimensions: Dict[str, DimensionTable]):
        self.fact = fact
        self.dimensions = dimensions

    def resolve(self, path: str) -> ResolvedAttribute:
        """
        Resolve an attribute path.

        Raises:
            SchemaError: Unknown table or attribute
        """
        if not path or path.count(".") > 1:
            raise SchemaError(f"Malformed attribute path '{path}'")

        if "." not in path:
            table_name, attr_name = self.fact.name, path
        else:
            table_name, attr_name = path.split(".", 1)

        if table_name == self.fact.name:
            attribute = self.fact.attributes.get(attr_name)
            if attribute is None:
                raise SchemaError(f"Fact table '{self.fact.name}' has no attribute '{attr_name}'")
            return ResolvedAttribute(path=path, attribute=attribute)

        dimension = self.dimensions.get(table_name)
        if dimension is None:
            raise SchemaError(
                f"'{table_name}' is not reachable from '{self.fact.name}' "
                f"(known dimensions: {sorted(self.dimensions)})"
            )
        attribute = dimension.attributes.get(attr_name)
        if attribute is None:
            raise SchemaError(f"Dimension '{table_name}' has no attribute '{attr_name}'")
        return ResolvedAttribute(path=path, attribute=attribute, dimension=dimension)

    def describe(self) -> Dict[str, Any]:
        """Plain description used by the API"""
        return {
            "fact": {
                "name": self.fact.name,
                "table": self.fact.table.name,
                "attributes": {a.name: a.type.value for a in self.fact.attributes.values()},
            },
            "dimensions": {
                name: {
                    "table": dim.table.name,
                    "joined_on": f"{self.fact.name}.{dim.foreign_key} = {name}.{dim.key}",
                    "attributes": {a.name: a.type.value for a in dim.attributes.values()},
                }
                for name, dim in self.dimensions.items()
            },
        }


def billing_schema() -> StarSchema:
    """Star schema of the billing warehouse"""
    fact_table = FactBilling.__table__
    customer_table = DimCustomer.__table__
    month_table = DimMonth.__table__

    return StarSchema(
        fact=FactTable(
            name="billing",
            table=fact_table,
            key="bill_id",
            sequence="bill_id",
            attributes=_attributes_of(fact_table),
        ),
        dimensions={
            "customer": DimensionTable(
                name="customer",
                table=customer_table,
                key="customer_id",
                foreign_key="customer_id",
                attributes=_attributes_of(customer_table),
            ),
            "month": DimensionTable(
                name="month",
                table=month_table,
                key="month_id",
                foreign_key="month_id",
                attributes=_attributes_of(month_table),
            ),
        },
    )
