#!/usr/bin/env python
"""
Manual Aggregate Refresh

Operator trigger for the refresh coordinator.

Usage:
    python scripts/refresh_aggregates.py --list
    python scripts/refresh_aggregates.py                      # every aggregate, full
    python scripts/refresh_aggregates.py --spec billing_by_country_category --mode incremental
    python scripts/refresh_aggregates.py --api-url http://localhost:8000 --no-wait

With --api-url (or AGGREGATES_API_URL) the request goes to the running API.
Otherwise the refresh runs in this process and is persisted through the
configured artifact backend.
"""

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import structlog  # noqa: E402

from src.aggregation.coordinator import RefreshMode, RefreshOutcome  # noqa: E402
from src.aggregation.exceptions import AggregationError  # noqa: E402
from src.aggregation.service import close_service, init_service  # noqa: E402
from src.config import get_settings  # noqa: E402
from src.config.logging import configure_logging  # noqa: E402
from src.database.connection import close_database, init_database  # noqa: E402
from src.serving.client import RemoteRefreshTrigger  # noqa: E402

logger = structlog.get_logger("refresh_aggregates")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Refresh materialized billing aggregates")
    parser.add_argument("--spec", action="append", dest="specs", help="Aggregate id (repeatable, default: all)")
    parser.add_argument(
        "--mode",
        choices=[m.value for m in RefreshMode],
        default=settings.aggregation.default_refresh_mode,
        help="Refresh mode",
    )
    parser.add_argument("--list", action="store_true", help="List registered aggregates and exit")
    parser.add_argument("--timeout", type=float, default=settings.aggregation.refresh_timeout_seconds,
                        help="Stop waiting after this many seconds (the refresh itself keeps running)")
    parser.add_argument("--api-url", default=settings.aggregation.api_url, help="Serving API base URL")
    parser.add_argument("--no-wait", action="store_true", help="Schedule and return without waiting")
    return parser.parse_args(argv)


def print_outcomes(outcomes: List[RefreshOutcome]) -> None:
    print(f"{'aggregate':<40} {'status':<10} {'mode':<12} {'version':>7} {'groups':>7}")
    for outcome in outcomes:
        print(
            f"{outcome.spec_id:<40} {outcome.status:<10} {outcome.mode.value:<12} "
            f"{outcome.version if outcome.version is not None else '-':>7} "
            f"{outcome.groups if outcome.groups is not None else '-':>7}"
        )


async def run_remote(args: argparse.Namespace) -> int:
    trigger = RemoteRefreshTrigger(args.api_url)
    specs = args.specs or await trigger.list_specs()
    if args.list:
        print("\n".join(specs))
        return 0

    outcomes, failed = [], 0
    for spec_id in specs:
        try:
            outcomes.append(await trigger.refresh(spec_id, RefreshMode(args.mode), wait=not args.no_wait))
        except AggregationError as e:
            logger.error("Refresh failed", spec_id=spec_id, error=str(e))
            failed += 1
    print_outcomes(outcomes)
    return 1 if failed else 0


async def run_local(args: argparse.Namespace) -> int:
    await init_database()
    try:
        service = await init_service()
        specs = args.specs or [spec.spec_id for spec in service.registry.list()]
        if args.list:
            for spec in service.registry.list():
                status = service.status(spec.spec_id)
                print(f"{spec.spec_id:<40} {spec.strategy.value:<14} {status['record']['state']}")
            return 0

        mode = RefreshMode(args.mode)
        results = await asyncio.gather(
            *(
                asyncio.wait_for(service.coordinator.refresh(spec_id, mode=mode, wait=not args.no_wait), args.timeout)
                for spec_id in specs
            ),
            return_exceptions=True,
        )

        outcomes, failed = [], 0
        for spec_id, result in zip(specs, results):
            if isinstance(result, asyncio.TimeoutError):
                logger.warning("Timed out waiting for refresh", spec_id=spec_id, timeout=args.timeout)
                failed += 1
            elif isinstance(result, AggregationError):
                logger.error("Refresh failed", spec_id=spec_id, error=str(result))
                failed += 1
            elif isinstance(result, BaseException):
                raise result
            else:
                outcomes.append(result)

        print_outcomes(outcomes)
        return 1 if failed else 0
    finally:
        await close_service()
        await close_database()


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging()
    runner = run_remote if args.api_url else run_local
    return asyncio.run(runner(args))


if __name__ == "__main__":
    sys.exit(main())
