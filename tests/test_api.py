"""Tests for the HTTP surface: health checks and loop status endpoints."""

from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from loopcore.main import app
from loopcore.services.device_sync import DeviceSyncManager
from loopcore.services.drivers.simulator import SimulatorPumpDriver
from loopcore.services.loop_service import LoopService
from loopcore.services.settings_manager import SettingsManager


@pytest.fixture
async def client():
    """Create async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac


@pytest.fixture
async def loop_service(orchestrator, blob_store, event_store, alert_store, now):
    """Loop service on in-memory stores, attached to the app."""
    device_sync = DeviceSyncManager(
        blob_store, event_store, alert_store, poll_timeout=2.0, clock=lambda: now
    )
    service = LoopService(
        orchestrator, device_sync, SettingsManager(orchestrator), clock=lambda: now
    )
    app.state.loop_service = service
    yield service
    await device_sync.recommends_loop.drain()
    app.state.loop_service = None
    await device_sync.close()


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    @pytest.mark.asyncio
    async def test_returns_healthy_with_db_connected(self, client):
        with patch(
            "loopcore.routers.health.check_database_connection",
            new_callable=AsyncMock
        ) as mock_db:
            mock_db.return_value = True

            response = await client.get("/health")

            assert response.status_code == 200
            assert response.json() == {"status": "healthy", "database": "connected"}

    @pytest.mark.asyncio
    async def test_returns_degraded_when_db_disconnected(self, client):
        with patch(
            "loopcore.routers.health.check_database_connection",
            new_callable=AsyncMock
        ) as mock_db:
            mock_db.return_value = False

            response = await client.get("/health")

            assert response.status_code == 503
            assert response.json() == {"status": "degraded", "database": "disconnected"}

    @pytest.mark.asyncio
    async def test_liveness_does_not_touch_database(self, client):
        with patch(
            "loopcore.routers.health.check_database_connection",
            new_callable=AsyncMock
        ) as mock_db:
            response = await client.get("/health/live")

            assert response.status_code == 200
            assert response.json() == {"status": "alive"}
            mock_db.assert_not_called()

    @pytest.mark.asyncio
    async def test_root(self, client):
        response = await client.get("/")

        assert response.status_code == 200
        assert response.json()["name"] == "loopcore"


class TestCorrelationId:
    """Tests for the correlation ID middleware."""

    @pytest.mark.asyncio
    async def test_incoming_id_is_echoed(self, client):
        response = await client.get("/health/live", headers={"X-Correlation-ID": "trace-42"})

        assert response.headers["X-Correlation-ID"] == "trace-42"

    @pytest.mark.asyncio
    async def test_id_generated_when_missing(self, client):
        response = await client.get("/health/live")

        assert response.headers["X-Correlation-ID"].startswith("req-")


class TestLoopEndpoints:
    """Tests for /api/loop endpoints."""

    @pytest.mark.asyncio
    async def test_unavailable_without_service(self, client):
        app.state.loop_service = None

        response = await client.get("/api/loop/status")

        assert response.status_code == 503

    @pytest.mark.asyncio
    async def test_status(self, client, loop_service, now):
        driver = SimulatorPumpDriver(activated_at=now - timedelta(hours=2), clock=lambda: now)
        await loop_service.device_sync.set_pump_driver(driver)
        await loop_service.heartbeat()
        await loop_service.device_sync.wait_for_poll()

        response = await client.get("/api/loop/status")

        assert response.status_code == 200
        data = response.json()
        assert data["pump_name"] == "Pump Simulator"
        assert data["poll_in_flight"] is False
        assert data["reservoir_level"] == 40.0
        assert data["active_manual_override"] is False
        assert data["last_heartbeat_time"] is not None

    @pytest.mark.asyncio
    async def test_status_hides_unknown_reservoir(self, client, loop_service, now):
        driver = SimulatorPumpDriver(reservoir_level=200.0, clock=lambda: now)
        await loop_service.device_sync.set_pump_driver(driver)
        await loop_service.heartbeat()
        await loop_service.device_sync.wait_for_poll()

        response = await client.get("/api/loop/status")

        assert response.json()["reservoir_level"] is None

    @pytest.mark.asyncio
    async def test_suggestion_not_found_before_first_cycle(self, client, loop_service):
        response = await client.get("/api/loop/suggestion")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_suggestion_after_cycle(self, client, loop_service, now):
        await loop_service.run_cycle()

        response = await client.get("/api/loop/suggestion")

        assert response.status_code == 200
        data = response.json()
        assert data["rate"] == 0.8
        assert data["eventualBG"] == 115
        assert data["timestamp"].startswith("2026-03-01T12:00:00")

    @pytest.mark.asyncio
    async def test_heartbeat(self, client, loop_service, now):
        response = await client.post("/api/loop/heartbeat")

        assert response.status_code == 200
        data = response.json()
        assert data["poll_started"] is True
        assert data["last_heartbeat_time"].startswith("2026-03-01T12:00:00")

    @pytest.mark.asyncio
    async def test_heartbeat_skipped_while_dosing(self, client, loop_service):
        await loop_service.device_sync.set_dosing_in_progress(True)

        response = await client.post("/api/loop/heartbeat")

        assert response.json()["poll_started"] is False
