"""
Unit Tests - Warehouse Sources
"""
from decimal import Decimal

import polars as pl
import pytest

from src.aggregation.exceptions import ComputeError
from src.database.models import DimCustomer, DimMonth, FactBilling
from src.warehouse.source import FrameWarehouseSource, SqlWarehouseSource

PATHS = ["customer.country", "month.year", "billing.billed_amount"]


@pytest.fixture
async def sql_source(schema, session_factory) -> SqlWarehouseSource:
    """Scenario bills plus one bill of a customer without a dimension row"""
    async with session_factory() as session:
        async with session.begin():
            session.add_all([
                DimCustomer(customer_id=1, category="Gold", country="US", industry="Retail"),
                DimMonth(month_id=202401, year=2024, month=1, month_name="January", quarter=1, quarter_name="Q1"),
                DimMonth(month_id=202402, year=2024, month=2, month_name="February", quarter=1, quarter_name="Q1"),
            ])
            await session.flush()
            session.add_all([
                FactBilling(bill_id=1, customer_id=1, month_id=202401, billed_amount=Decimal("100.00"), quantity=1),
                FactBilling(bill_id=2, customer_id=1, month_id=202402, billed_amount=Decimal("50.00"), quantity=2),
                FactBilling(bill_id=3, customer_id=None, month_id=202402, billed_amount=Decimal("7.50"), quantity=1),
            ])
    return SqlWarehouseSource(schema, session_factory)


class TestSqlWarehouseSource:
    """Tests for SqlWarehouseSource"""

    async def test_fetch_all(self, sql_source):
        """Test every fact is returned, with None for dimension misses"""
        snapshot = await sql_source.fetch(PATHS)

        assert snapshot.watermark == 3
        assert len(snapshot) == 3
        assert snapshot.rows[0] == {
            "customer.country": "US",
            "month.year": 2024,
            "billing.billed_amount": Decimal("100.00"),
        }
        assert snapshot.rows[2]["customer.country"] is None
        assert snapshot.rows[2]["month.year"] == 2024

    async def test_fetch_since(self, sql_source):
        """Test only facts past the watermark are returned"""
        snapshot = await sql_source.fetch(PATHS, since=1)

        assert [row["billing.billed_amount"] for row in snapshot.rows] == [Decimal("50.00"), Decimal("7.50")]
        assert snapshot.watermark == 3

    async def test_fetch_nothing_new(self, sql_source):
        """Test the watermark is kept when nothing was appended"""
        snapshot = await sql_source.fetch(PATHS, since=3)

        assert snapshot.rows == []
        assert snapshot.watermark == 3

    async def test_current_watermark(self, sql_source):
        """Test the highest bill id is the watermark"""
        assert await sql_source.current_watermark() == 3

    async def test_unknown_path(self, sql_source):
        """Test paths outside the schema fail as compute errors"""
        with pytest.raises(ComputeError):
            await sql_source.fetch(["product.brand"])

    def test_query_joins_only_needed_dimensions(self, schema):
        """Test the SELECT joins the dimensions the paths need, outer"""
        source = SqlWarehouseSource(schema)
        sql = str(source.build_query(["customer.country", "billed_amount"], since=10))

        assert "LEFT OUTER JOIN dim_customer" in sql
        assert "dim_month" not in sql
        assert "fact_billing.bill_id >" in sql

    async def test_engine_over_sql_snapshot(self, sql_source, engine, flat_spec):
        """Test the scenario totals through the SQL source"""
        snapshot = await sql_source.fetch(flat_spec.source_paths())
        rows = engine.finalize(flat_spec, engine.compute(flat_spec, snapshot.rows))

        assert rows == [
            {"country": "US", "year": 2024, "grouping_id": 0, "total_billed": Decimal("150.00")},
            {"country": None, "year": 2024, "grouping_id": 0, "total_billed": Decimal("7.50")},
        ]


class TestFrameWarehouseSource:
    """Tests for FrameWarehouseSource"""

    async def test_fetch_joins_dimensions(self, frame_source):
        """Test dimension attributes are joined onto facts"""
        snapshot = await frame_source.fetch(["customer.category", "month.quarter_name", "quantity"])

        assert snapshot.rows == [
            {"customer.category": "Gold", "month.quarter_name": "Q1", "quantity": 1},
            {"customer.category": "Gold", "month.quarter_name": "Q1", "quantity": 2},
        ]
        assert snapshot.watermark == 2

    async def test_append_and_fetch_since(self, frame_source):
        """Test appended facts are visible past the old watermark, misses as None"""
        assert await frame_source.current_watermark() == 2
        frame_source.append(pl.DataFrame({
            "bill_id": [3, 4],
            "customer_id": [None, 1],
            "month_id": [202401, 202412],
            "billed_amount": [5.00, 10.00],
            "quantity": [1, 1],
        }))

        snapshot = await frame_source.fetch(["customer.country", "month.year"], since=2)

        assert snapshot.rows == [
            {"customer.country": None, "month.year": 2024},
            {"customer.country": "US", "month.year": None},
        ]
        assert snapshot.watermark == 4

    async def test_append_below_watermark(self, frame_source):
        """Test facts that would land behind the watermark are rejected"""
        late = pl.DataFrame({
            "bill_id": [1],
            "customer_id": [1],
            "month_id": [202401],
            "billed_amount": [9.99],
            "quantity": [1],
        })

        with pytest.raises(ValueError):
            frame_source.append(late)
        assert await frame_source.current_watermark() == 2
        assert len((await frame_source.fetch(["month.year"])).rows) == 2

    async def test_nothing_new(self, frame_source):
        """Test an empty delta keeps the watermark"""
        snapshot = await frame_source.fetch(["month.year"], since=2)

        assert len(snapshot) == 0
        assert snapshot.watermark == 2

    async def test_missing_dimension_frame(self, schema, scenario_frames):
        """Test a dimension without a loaded frame fails as a compute error"""
        source = FrameWarehouseSource(schema, scenario_frames["fact"], {"month": scenario_frames["month"]})

        with pytest.raises(ComputeError):
            await source.fetch(["customer.country"])

    async def test_from_parquet(self, schema, scenario_frames, tmp_path):
        """Test loading curated parquet exports"""
        scenario_frames["fact"].write_parquet(tmp_path / "fact_billing.parquet")
        scenario_frames["customer"].write_parquet(tmp_path / "dim_customer.parquet")
        scenario_frames["month"].write_parquet(tmp_path / "dim_month.parquet")

        source = FrameWarehouseSource.from_parquet(schema, str(tmp_path))
        snapshot = await source.fetch(["customer.country", "billed_amount"])

        assert [row["customer.country"] for row in snapshot.rows] == ["US", "US"]
        assert await source.current_watermark() == 2
