"""
API Integration Tests — Health-check trigger, run history and summary.
"""

import pytest
from httpx import AsyncClient


@pytest.mark.asyncio
class TestHealthChecksAPI:
    async def test_trigger_runs_once_then_debounces(self, client: AsyncClient, seeded_db, scheduler):
        resp = await client.post("/api/v1/health-checks/all/trigger")
        assert resp.status_code == 200
        data = resp.json()
        assert data["ran"] is True
        assert data["notifications_created"] == 3
        assert data["recipient_id"] == "00000000-0000-0000-0000-000000000001"

        resp = await client.post("/api/v1/health-checks/all/trigger")
        assert resp.json()["ran"] is False
        assert resp.json()["reason"] == "local_debounce"
        await scheduler.dispatcher.drain()

    async def test_forced_trigger_records_suppressed_run(self, client: AsyncClient, seeded_db, scheduler):
        await client.post("/api/v1/health-checks/all/trigger")

        resp = await client.post("/api/v1/health-checks/all/trigger?force=true")
        data = resp.json()
        assert data["ran"] is True
        assert data["forced"] is True
        assert data["notifications_created"] == 0
        assert data["notifications_suppressed"] == 3

        runs = (await client.get("/api/v1/health-checks/runs?check_kind=all")).json()
        assert [r["notifications_created"] for r in runs] == [0, 3]
        await scheduler.dispatcher.drain()

    async def test_force_requires_admin(self, client: AsyncClient, mock_user):
        mock_user["role"] = "pharmacist"
        resp = await client.post("/api/v1/health-checks/stock/trigger?force=true")
        assert resp.status_code == 403

    async def test_unknown_check_kind(self, client: AsyncClient):
        resp = await client.post("/api/v1/health-checks/hourly/trigger")
        assert resp.status_code == 422
        assert "Unknown check kind" in resp.json()["detail"]

        resp = await client.get("/api/v1/health-checks/runs?check_kind=hourly")
        assert resp.status_code == 422

    async def test_runs_empty(self, client: AsyncClient):
        resp = await client.get("/api/v1/health-checks/runs")
        assert resp.status_code == 200
        assert resp.json() == []

    async def test_summary(self, client: AsyncClient, seeded_db, scheduler):
        await client.post("/api/v1/health-checks/stock/trigger")

        resp = await client.get("/api/v1/health-checks/summary")
        assert resp.status_code == 200
        data = resp.json()
        assert data["stock"] == {
            "total": 4,
            "out_of_stock": 1,
            "critical_low_stock": 1,
            "low_stock": 0,
            "healthy": 2,
            "expiring_soon": 1,
        }
        checks = {c["check_kind"]: c for c in data["checks"]}
        assert checks["stock"]["due"] is False
        assert checks["stock"]["last_run"]["status"] == "success"
        assert checks["all"]["due"] is True
        assert checks["all"]["last_run"] is None
        await scheduler.dispatcher.drain()
