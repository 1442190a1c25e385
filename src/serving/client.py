"""
Remote Refresh Trigger

Delivers refresh requests to a running API process over HTTP. The serving
process owns the artifacts readers see, so out-of-process trigger sources
(CLI, Prefect flow) go through its refresh endpoint instead of refreshing
their own copy.
"""

from typing import Any, Dict, List, Optional

import httpx
import structlog

from src.aggregation.coordinator import RefreshMode, RefreshOutcome, TriggerEvent
from src.aggregation.exceptions import ComputeError, NotFoundError
from src.config import get_settings

logger = structlog.get_logger(__name__)


class RemoteRefreshTrigger:
    """
    RefreshTrigger backed by the aggregate API.

    Example:
        trigger = RemoteRefreshTrigger("http://aggregates:8000")
        outcome = await trigger.refresh("billing_by_country_category")
    """

    def __init__(self, api_url: Optional[str] = None, timeout: Optional[float] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        agg = get_settings().aggregation
        api_url = api_url or agg.api_url
        if not api_url:
            raise ValueError("No API URL configured (AGGREGATES_API_URL)")
        self.base_url = f"{api_url.rstrip('/')}/api/v1/aggregates"
        self.timeout = timeout or agg.request_timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @staticmethod
    def _outcome(payload: Dict[str, Any]) -> RefreshOutcome:
        return RefreshOutcome(
            spec_id=payload["spec_id"],
            status=payload["status"],
            mode=RefreshMode(payload["mode"]),
            version=payload.get("version"),
            coalesced=payload.get("coalesced", False),
            groups=payload.get("groups"),
            duration_seconds=payload.get("duration_seconds"),
        )

    async def list_specs(self) -> List[str]:
        async with self._client() as client:
            response = await client.get(self.base_url)
            response.raise_for_status()
            return [item["spec_id"] for item in response.json()]

    async def refresh(self, spec_id: str, mode: RefreshMode = RefreshMode.FULL, wait: bool = True) -> RefreshOutcome:
        """
        Raises:
            NotFoundError: The API does not know the spec
            ComputeError: The refresh failed or the API could not be reached
        """
        url = f"{self.base_url}/{spec_id}/refresh"
        params = {"mode": RefreshMode(mode).value, "wait": str(wait).lower()}
        try:
            async with self._client() as client:
                response = await client.post(url, params=params)
        except httpx.RequestError as e:
            logger.error("Refresh request failed", spec_id=spec_id, error=str(e))
            raise ComputeError(f"Cannot reach aggregate API: {e}", spec_id) from e

        if response.status_code == 404:
            raise NotFoundError("Aggregate spec is not registered", spec_id)
        if response.status_code >= 400:
            detail = response.text
            logger.error("Remote refresh failed", spec_id=spec_id, status_code=response.status_code, detail=detail)
            raise ComputeError(f"Remote refresh failed ({response.status_code}): {detail}", spec_id)
        return self._outcome(response.json())

    async def on_trigger(self, event: TriggerEvent) -> List[RefreshOutcome]:
        spec_ids = [event.spec_id] if event.spec_id is not None else await self.list_specs()
        return [await self.refresh(spec_id, mode=event.mode, wait=False) for spec_id in spec_ids]
