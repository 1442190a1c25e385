"""
Unit Tests - Remote Refresh Trigger
"""
import httpx
import pytest

from src.aggregation.coordinator import RefreshMode, TriggerEvent
from src.aggregation.exceptions import ComputeError, NotFoundError
from src.config import get_settings
from src.serving.client import RemoteRefreshTrigger


def _trigger(handler) -> RemoteRefreshTrigger:
    return RemoteRefreshTrigger("http://aggregates:8000/", timeout=5, transport=httpx.MockTransport(handler))


class TestRemoteRefreshTrigger:
    """Tests for RemoteRefreshTrigger"""

    async def test_refresh(self):
        """Test the refresh endpoint is called with mode and wait"""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={
                "spec_id": "by_country", "status": "completed", "mode": "incremental",
                "version": 4, "coalesced": False, "groups": 12, "duration_seconds": 0.2,
            })

        outcome = await _trigger(handler).refresh("by_country", mode=RefreshMode.INCREMENTAL)

        assert outcome.status == "completed"
        assert outcome.mode is RefreshMode.INCREMENTAL
        assert outcome.version == 4
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/api/v1/aggregates/by_country/refresh"
        assert seen[0].url.params["mode"] == "incremental"
        assert seen[0].url.params["wait"] == "true"

    async def test_unknown_spec(self):
        """Test 404 becomes NotFoundError"""
        trigger = _trigger(lambda request: httpx.Response(404, json={"error": "NotFoundError"}))

        with pytest.raises(NotFoundError):
            await trigger.refresh("missing")

    async def test_server_error(self):
        """Test failed refreshes become ComputeError"""
        trigger = _trigger(lambda request: httpx.Response(503, json={"detail": "warehouse down"}))

        with pytest.raises(ComputeError) as exc_info:
            await trigger.refresh("by_country")
        assert "warehouse down" in exc_info.value.message

    async def test_unreachable(self):
        """Test connection failures become ComputeError"""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(ComputeError):
            await _trigger(handler).refresh("by_country")

    async def test_on_trigger_all_specs(self):
        """Test an event without a spec id refreshes every listed spec without waiting"""
        refreshed = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "GET":
                return httpx.Response(200, json=[{"spec_id": "a"}, {"spec_id": "b"}])
            refreshed.append((request.url.path, request.url.params["wait"]))
            spec_id = request.url.path.split("/")[-2]
            return httpx.Response(202, json={"spec_id": spec_id, "status": "scheduled", "mode": "incremental"})

        outcomes = await _trigger(handler).on_trigger(TriggerEvent.facts_appended())

        assert [outcome.spec_id for outcome in outcomes] == ["a", "b"]
        assert refreshed == [
            ("/api/v1/aggregates/a/refresh", "false"),
            ("/api/v1/aggregates/b/refresh", "false"),
        ]

    def test_requires_url(self, monkeypatch):
        """Test a trigger cannot be built without an API URL"""
        monkeypatch.setattr(get_settings().aggregation, "api_url", None)

        with pytest.raises(ValueError):
            RemoteRefreshTrigger()
