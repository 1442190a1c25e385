"""
Warehouse Seeding

Loads synthetic billing data into the star schema for development and
demos: a month dimension, customers, and an append-only batch of bills.
Bills appended after the first run only add rows with higher bill ids, so
aggregates can be brought up to date with an incremental refresh.

Usage:
    python -m src.ingestion.seed_db --customers 200 --bills 5000
    python -m src.ingestion.seed_db --bills 1000 --refresh
    python -m src.ingestion.seed_db --export ./data/curated
"""

import argparse
import asyncio
import calendar
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import polars as pl
import structlog
from sqlalchemy import func, insert, select

from src.aggregation.coordinator import TriggerEvent
from src.aggregation.service import close_service, init_service
from src.config import get_settings
from src.config.logging import configure_logging
from src.database.connection import close_database, create_tables, get_db, init_database
from src.database.models import DimCustomer, DimMonth, FactBilling

logger = structlog.get_logger(__name__)
settings = get_settings()

CATEGORIES = [("Gold", 0.15), ("Silver", 0.35), ("Bronze", 0.50)]
COUNTRIES = [("US", 0.40), ("DE", 0.15), ("GB", 0.15), ("FR", 0.10), ("JP", 0.10), ("BR", 0.10)]
INDUSTRIES = ["Retail", "Manufacturing", "Healthcare", "Finance", "Logistics", "Software"]


def _choice(rng: np.random.Generator, weighted: Sequence[tuple], size: int) -> List[str]:
    values, weights = zip(*weighted)
    return list(rng.choice(values, size=size, p=weights))


def build_months(start_year: int = 2023, end_year: int = 2025) -> List[Dict[str, Any]]:
    """Month dimension rows, month_id in YYYYMM format"""
    months = []
    for year in range(start_year, end_year + 1):
        for month in range(1, 13):
            quarter = (month - 1) // 3 + 1
            months.append({
                "month_id": year * 100 + month,
                "year": year,
                "month": month,
                "month_name": calendar.month_name[month],
                "quarter": quarter,
                "quarter_name": f"Q{quarter}",
            })
    return months


def generate_customers(n: int, rng: np.random.Generator, start_id: int = 1) -> List[Dict[str, Any]]:
    categories = _choice(rng, CATEGORIES, n)
    countries = _choice(rng, COUNTRIES, n)
    industries = rng.choice(INDUSTRIES, size=n)
    return [
        {
            "customer_id": start_id + i,
            "category": str(categories[i]),
            "country": str(countries[i]),
            "industry": str(industries[i]),
        }
        for i in range(n)
    ]


def generate_bills(
    n: int,
    customer_ids: Sequence[int],
    month_ids: Sequence[int],
    rng: np.random.Generator,
    unknown_rate: float = 0.01,
) -> List[Dict[str, Any]]:
    """
    Bill rows with log-normally distributed amounts.

    A small share has no customer; aggregates see those bills with unknown
    (None) customer attributes through the outer join.
    """
    amounts = np.round(rng.lognormal(mean=5.0, sigma=0.8, size=n), 2)
    quantities = rng.integers(1, 20, size=n)
    customers = rng.choice(np.asarray(customer_ids), size=n)
    months = rng.choice(np.asarray(month_ids), size=n)
    unknown = rng.random(size=n) < unknown_rate
    return [
        {
            "customer_id": None if unknown[i] else int(customers[i]),
            "month_id": int(months[i]),
            "billed_amount": Decimal(str(amounts[i])),
            "quantity": int(quantities[i]),
        }
        for i in range(n)
    ]


async def insert_rows(model: Any, records: List[Dict[str, Any]], chunk_size: int = 1000) -> int:
    """Insert records in chunks using Core insert"""
    if not records:
        return 0

    async with get_db() as db:
        for i in range(0, len(records), chunk_size):
            await db.execute(insert(model), records[i:i + chunk_size])
    logger.info("Inserted records", table=model.__tablename__, count=len(records))
    return len(records)


async def _existing_ids(column) -> set:
    async with get_db() as db:
        result = await db.execute(select(column))
        return set(result.scalars().all())


async def seed(customers: int = 100, bills: int = 2000, start_year: int = 2023,
               end_year: int = 2025, seed_value: Optional[int] = 42) -> int:
    """
    Seed missing dimension rows and append `bills` new facts.

    Returns:
        Number of bills appended
    """
    rng = np.random.default_rng(seed_value)

    months = build_months(start_year, end_year)
    known_months = await _existing_ids(DimMonth.month_id)
    await insert_rows(DimMonth, [m for m in months if m["month_id"] not in known_months])

    known_customers = await _existing_ids(DimCustomer.customer_id)
    if len(known_customers) < customers:
        start_id = max(known_customers, default=0) + 1
        await insert_rows(DimCustomer, generate_customers(customers - len(known_customers), rng, start_id))
        known_customers = await _existing_ids(DimCustomer.customer_id)

    records = generate_bills(bills, sorted(known_customers), [m["month_id"] for m in months], rng)
    return await insert_rows(FactBilling, records)


async def export_parquet(directory: Optional[str] = None) -> Path:
    """Write the star schema tables as parquet files for the frame source"""
    lake = settings.data_lake
    root = Path(directory or lake.curated_path)
    root.mkdir(parents=True, exist_ok=True)

    exports = [
        (FactBilling, lake.fact_file),
        (DimCustomer, lake.customer_file),
        (DimMonth, lake.month_file),
    ]
    async with get_db() as db:
        for model, filename in exports:
            table = model.__table__
            result = await db.execute(select(table))
            frame = pl.DataFrame([dict(row) for row in result.mappings().all()], schema=list(table.columns.keys()))
            frame.write_parquet(root / filename)
            logger.info("Exported table", table=table.name, rows=frame.height, path=str(root / filename))
    return root


async def notify_appended() -> None:
    """Fold the new facts into every aggregate (incremental refresh)"""
    service = await init_service()
    try:
        await service.coordinator.on_trigger(TriggerEvent.facts_appended(origin="seed"))
        await service.coordinator.wait_idle()
    finally:
        await close_service()


async def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Seed the billing warehouse with synthetic data")
    parser.add_argument("--customers", type=int, default=100, help="Minimum number of customers")
    parser.add_argument("--bills", type=int, default=2000, help="Bills to append")
    parser.add_argument("--start-year", type=int, default=2023)
    parser.add_argument("--end-year", type=int, default=2025)
    parser.add_argument("--seed", type=int, default=None, help="Random seed")
    parser.add_argument("--refresh", action="store_true", help="Refresh aggregates after appending")
    parser.add_argument("--export", metavar="DIR", nargs="?", const="", default=None,
                        help="Export tables as parquet (default: curated zone)")
    args = parser.parse_args(argv)

    configure_logging()
    logger.info("Starting database seeding...")
    await init_database()

    try:
        await create_tables()
        appended = await seed(args.customers, args.bills, args.start_year, args.end_year, args.seed)
        async with get_db() as db:
            total = (await db.execute(select(func.count()).select_from(FactBilling))).scalar()
        logger.info("Database seeding completed", appended=appended, total_bills=total)

        if args.export is not None:
            await export_parquet(args.export or None)
        if args.refresh and appended:
            await notify_appended()
    finally:
        await close_database()


def cli() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    cli()
