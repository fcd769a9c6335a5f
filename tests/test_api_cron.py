"""
Tests for apex/api/cron.py - the campaign executor cron trigger.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from apex.api.cron import get_campaign_executor
from apex.services.campaign_executor import TickResult
from tests.conftest import make_settings

URL = "/api/cron/campaign-executor"


@pytest.fixture
def executor(app):
    """Executor double installed as the route dependency."""
    executor = MagicMock()
    executor.process_campaigns = AsyncMock(return_value=TickResult(processed=2, calls=3))
    executor.builds = 0

    def _factory():
        executor.builds += 1
        return executor

    app.dependency_overrides[get_campaign_executor] = _factory
    yield executor
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _no_alerts():
    with patch("apex.api.cron.send_alert", new_callable=AsyncMock) as mock:
        yield mock


# ---------------------------------------------------------------------------
# Method handling
# ---------------------------------------------------------------------------

class TestMethods:
    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
    async def test_non_get_is_405_without_running(self, client, executor, method):
        response = await client.request(method, URL)

        assert response.status_code == 405
        assert response.json() == {"error": "Method not allowed"}
        assert response.headers["Allow"] == "GET"
        assert executor.builds == 0
        executor.process_campaigns.assert_not_called()


# ---------------------------------------------------------------------------
# GET
# ---------------------------------------------------------------------------

class TestTrigger:
    async def test_success_body(self, client, executor):
        response = await client.get(URL)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Campaign processing completed"
        assert data["force_mode"] is False
        assert data["result"] == {"processed": 2, "calls": 3, "errors": []}
        assert data["timestamp"]
        executor.process_campaigns.assert_awaited_once_with(False)

    async def test_force_flag_is_passed_through(self, client, executor):
        response = await client.get(URL, params={"force": "true"})

        assert response.status_code == 200
        assert response.json()["force_mode"] is True
        executor.process_campaigns.assert_awaited_once_with(True)

    async def test_per_campaign_errors_are_reported_with_200(self, client, executor):
        executor.process_campaigns.return_value = TickResult(
            processed=1, calls=0, errors=[{"campaign_id": "c1", "error": "no key"}]
        )
        response = await client.get(URL)
        assert response.status_code == 200
        assert response.json()["result"]["errors"] == [{"campaign_id": "c1", "error": "no key"}]

    async def test_executor_failure_is_500(self, client, executor, _no_alerts):
        executor.process_campaigns.side_effect = RuntimeError("database is gone")

        response = await client.get(URL)

        assert response.status_code == 500
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "Campaign processing failed"
        assert data["message"] == "database is gone"
        assert data["timestamp"]
        _no_alerts.assert_awaited_once()

    async def test_overlapping_invocations_each_run(self, client, executor):
        started = 0

        async def _slow_tick(force):
            nonlocal started
            started += 1
            await asyncio.sleep(0.05)
            return TickResult()

        executor.process_campaigns.side_effect = _slow_tick

        first, second = await asyncio.gather(client.get(URL), client.get(URL))

        assert first.status_code == second.status_code == 200
        assert started == 2
        assert executor.builds == 2

    async def test_real_executor_with_no_campaigns(self, client):
        response = await client.get(URL)
        assert response.status_code == 200
        assert response.json()["result"] == {"processed": 0, "calls": 0, "errors": []}


# ---------------------------------------------------------------------------
# Cron secret
# ---------------------------------------------------------------------------

class TestCronSecret:
    @pytest.fixture(autouse=True)
    def _secret(self):
        with patch("apex.api.cron.get_settings", return_value=make_settings(cron_secret="s3cret")):
            yield

    async def test_missing_token_is_401(self, client, executor):
        response = await client.get(URL)
        assert response.status_code == 401
        executor.process_campaigns.assert_not_called()

    async def test_wrong_token_is_401(self, client, executor):
        response = await client.get(URL, headers={"Authorization": "Bearer nope"})
        assert response.status_code == 401

    async def test_valid_token_runs(self, client, executor):
        response = await client.get(URL, headers={"Authorization": "Bearer s3cret"})
        assert response.status_code == 200
        executor.process_campaigns.assert_awaited_once()
