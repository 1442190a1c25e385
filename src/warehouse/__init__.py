"""
Warehouse Module

Star schema descriptor and the sources the aggregate engine reads from.
"""
from .schema import (
    Attribute,
    AttributeType,
    DimensionTable,
    FactTable,
    SchemaError,
    StarSchema,
    billing_schema,
)
from .source import FrameWarehouseSource, Snapshot, SqlWarehouseSource, WarehouseSource

__all__ = [
    "Attribute",
    "AttributeType",
    "DimensionTable",
    "FactTable",
    "SchemaError",
    "StarSchema",
    "billing_schema",
    "FrameWarehouseSource",
    "Snapshot",
    "SqlWarehouseSource",
    "WarehouseSource",
]
