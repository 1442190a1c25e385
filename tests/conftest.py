"""
Test Suite Configuration
"""
from decimal import Decimal
from typing import AsyncGenerator, Dict, List

import polars as pl
import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from src.aggregation.backends import MemoryArtifactBackend
from src.aggregation.engine import AggregationEngine
from src.aggregation.registry import AggregateRegistry
from src.aggregation.service import AggregationService
from src.aggregation.specs import AggregateSpec, GroupingStrategy, Measure
from src.aggregation.store import MaterializedStore
from src.config import Settings
from src.config.settings import AggregationSettings
from src.database.connection import build_engine, build_session_factory, create_tables
from src.warehouse.schema import StarSchema, billing_schema
from src.warehouse.source import FrameWarehouseSource


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """Create test settings"""
    return Settings(
        APP_ENV="testing",
        DEBUG=True,
        aggregation=AggregationSettings(store_backend="memory", register_catalog=False),
    )


@pytest.fixture(scope="session")
def schema() -> StarSchema:
    return billing_schema()


@pytest.fixture
def engine(schema) -> AggregationEngine:
    return AggregationEngine(schema)


@pytest.fixture
def registry(schema) -> AggregateRegistry:
    return AggregateRegistry(schema)


@pytest.fixture
def memory_backend() -> MemoryArtifactBackend:
    return MemoryArtifactBackend()


@pytest.fixture
def store(memory_backend, registry, engine) -> MaterializedStore:
    return MaterializedStore(memory_backend, registry, engine.codec)


# =============================================================================
# SPECS
# =============================================================================

@pytest.fixture
def flat_spec() -> AggregateSpec:
    """FLAT(country, year) SUM(billed_amount)"""
    return AggregateSpec(
        name="billing_by_country_year",
        dimensions=["customer.country", "month.year"],
        measures=[Measure(name="total_billed", attribute="billing.billed_amount")],
    )


@pytest.fixture
def rollup_spec() -> AggregateSpec:
    """ROLLUP(country) SUM(billed_amount)"""
    return AggregateSpec(
        name="billing_rollup_country",
        dimensions=["customer.country"],
        measures=[Measure(name="total_billed", attribute="billing.billed_amount")],
        strategy=GroupingStrategy.ROLLUP,
    )


# =============================================================================
# DATA
# =============================================================================

@pytest.fixture
def scenario_rows() -> List[Dict]:
    """
    Joined rows of two bills for customer 1 (US, Gold) in January and
    February 2024 (both Q1): 100 + 50.
    """
    return [
        {"customer.country": "US", "customer.category": "Gold", "month.year": 2024,
         "month.quarter_name": "Q1", "billing.billed_amount": Decimal("100.00")},
        {"customer.country": "US", "customer.category": "Gold", "month.year": 2024,
         "month.quarter_name": "Q1", "billing.billed_amount": Decimal("50.00")},
    ]


@pytest.fixture
def warehouse_rows() -> List[Dict]:
    """Two countries, two years, one bill with an unknown customer"""
    data = [
        ("US", "Gold", 2023, "Q4", "10.10"),
        ("US", "Gold", 2024, "Q1", "20.20"),
        ("US", "Silver", 2024, "Q2", "30.30"),
        ("DE", "Silver", 2023, "Q4", "40.40"),
        ("DE", "Bronze", 2024, "Q1", "50.50"),
        (None, None, 2024, "Q1", "5.00"),
    ]
    return [
        {"customer.country": country, "customer.category": category, "month.year": year,
         "month.quarter_name": quarter, "billing.billed_amount": Decimal(amount)}
        for country, category, year, quarter, amount in data
    ]


def _months(*month_ids: int) -> pl.DataFrame:
    return pl.DataFrame({
        "month_id": list(month_ids),
        "year": [m // 100 for m in month_ids],
        "month": [m % 100 for m in month_ids],
        "month_name": ["month"] * len(month_ids),
        "quarter": [(m % 100 - 1) // 3 + 1 for m in month_ids],
        "quarter_name": [f"Q{(m % 100 - 1) // 3 + 1}" for m in month_ids],
    })


@pytest.fixture
def scenario_frames() -> Dict[str, pl.DataFrame]:
    """The two-bill scenario as star schema tables"""
    return {
        "fact": pl.DataFrame({
            "bill_id": [1, 2],
            "customer_id": [1, 1],
            "month_id": [202401, 202402],
            "billed_amount": [100.00, 50.00],
            "quantity": [1, 2],
        }),
        "customer": pl.DataFrame({
            "customer_id": [1],
            "category": ["Gold"],
            "country": ["US"],
            "industry": ["Retail"],
        }),
        "month": _months(202401, 202402),
    }


@pytest.fixture
def frame_source(schema, scenario_frames) -> FrameWarehouseSource:
    return FrameWarehouseSource(
        schema,
        scenario_frames["fact"],
        {"customer": scenario_frames["customer"], "month": scenario_frames["month"]},
    )


@pytest.fixture
async def service(schema, frame_source, test_settings) -> AsyncGenerator[AggregationService, None]:
    """Started service over the scenario frames with a memory backend"""
    service = AggregationService(schema, frame_source, MemoryArtifactBackend(), test_settings)
    await service.start(register_catalog=False)
    yield service
    await service.stop()


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite database with every table created"""
    engine = build_engine("sqlite+aiosqlite:///:memory:")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_engine)
