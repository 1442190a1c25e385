"""
Prefect Workflow Orchestration - Aggregate Refresh

External scheduler for the refresh coordinator:
- Scheduled full or incremental refreshes
- Retries with backoff per aggregate (the coordinator itself never retries)
- Run summary with failed aggregates

With AGGREGATES_API_URL set, refreshes are posted to the serving API so the
process that serves reads publishes the new artifacts. Without it the flow
refreshes in-process against the configured artifact backend.
"""

import asyncio
from typing import List, Optional

from prefect import flow, task, get_run_logger

from src.aggregation.coordinator import RefreshMode
from src.aggregation.service import close_service, init_service
from src.config import get_settings
from src.database.connection import close_database, init_database
from src.serving.client import RemoteRefreshTrigger

settings = get_settings()


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="list_aggregates",
    description="Registered aggregate ids",
    retries=2,
    retry_delay_seconds=30,
)
async def list_aggregates(api_url: Optional[str] = None) -> List[str]:
    """Spec ids known to the API (or to a local service)"""
    if api_url:
        return await RemoteRefreshTrigger(api_url).list_specs()

    service = await init_service()
    return [spec.spec_id for spec in service.registry.list()]


@task(
    name="refresh_aggregate",
    description="Refresh one materialized aggregate",
    retries=3,
    retry_delay_seconds=[10, 60, 300],
)
async def refresh_aggregate(spec_id: str, mode: str = "full", api_url: Optional[str] = None) -> dict:
    """Refresh one aggregate and wait for the outcome; raises so Prefect retries"""
    logger = get_run_logger()

    if api_url:
        outcome = await RemoteRefreshTrigger(api_url).refresh(spec_id, mode=RefreshMode(mode), wait=True)
    else:
        service = await init_service()
        outcome = await service.coordinator.refresh(spec_id, mode=RefreshMode(mode), wait=True)

    logger.info(
        f"Refreshed {spec_id}: {outcome.status} "
        f"(mode={outcome.mode.value}, version={outcome.version}, groups={outcome.groups})"
    )
    return {
        "spec_id": outcome.spec_id,
        "status": outcome.status,
        "mode": outcome.mode.value,
        "version": outcome.version,
        "groups": outcome.groups,
        "duration_seconds": outcome.duration_seconds,
    }


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="refresh-aggregates",
    description="Refresh materialized billing aggregates",
)
async def refresh_aggregates(
    spec_ids: Optional[List[str]] = None,
    mode: str = "full",
    api_url: Optional[str] = None,
) -> dict:
    """
    Refresh the given aggregates (default: all of them).

    A failing aggregate does not stop the others; the flow fails at the end
    if any aggregate could not be refreshed after its retries.
    """
    logger = get_run_logger()
    api_url = api_url or settings.aggregation.api_url

    if not api_url:
        await init_database()
        await init_service()

    async def run_one(spec_id: str):
        try:
            return await refresh_aggregate(spec_id, mode, api_url)
        except Exception as e:
            logger.error(f"Refresh of {spec_id} failed after retries: {e}")
            return None

    try:
        targets = spec_ids or await list_aggregates(api_url)
        logger.info(f"Refreshing {len(targets)} aggregates ({mode})")

        outcomes = await asyncio.gather(*(run_one(spec_id) for spec_id in targets))
        results = {
            "mode": mode,
            "refreshed": [outcome for outcome in outcomes if outcome is not None],
            "failed": [spec_id for spec_id, outcome in zip(targets, outcomes) if outcome is None],
        }
    finally:
        if not api_url:
            await close_service()
            await close_database()

    if results["failed"]:
        raise RuntimeError(f"Aggregates failed to refresh: {results['failed']}")
    return results


if __name__ == "__main__":
    asyncio.run(refresh_aggregates())
