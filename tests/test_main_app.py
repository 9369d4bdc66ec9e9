"""
Tests for fixmo/main.py: app factory, error rendering, correlation IDs and lifespan.
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock, patch

from fastapi import FastAPI
from fastapi.testclient import TestClient

from fixmo.exceptions import ConflictError, NotFoundError, ValidationError
from fixmo.main import create_app, fixmo_error_handler, lifespan


def _request(path="/api/v1/appointments/x/status"):
    request = MagicMock()
    request.url.path = path
    return request


class TestCreateApp:
    def test_routes_registered(self):
        app = create_app()
        paths = {route.path for route in app.routes}
        assert "/health" in paths
        assert "/api/v1/appointments/{appointment_id}/status" in paths
        assert "/api/v1/appointments/{appointment_id}/backjobs" in paths
        assert "/api/v1/admin/backjobs/{backjob_id}/reject-dispute" in paths
        assert "/api/v1/conversations/{conversation_id}/messages" in paths

    def test_correlation_id_round_trip(self):
        client = TestClient(create_app())
        response = client.get("/health", headers={"X-Correlation-ID": "req-123"})
        assert response.status_code == 200
        assert response.headers["X-Correlation-ID"] == "req-123"

    def test_correlation_id_generated(self):
        client = TestClient(create_app())
        response = client.get("/health")
        assert response.headers["X-Correlation-ID"]

    def test_missing_bearer_token_rejected(self):
        client = TestClient(create_app())
        response = client.get("/api/v1/conversations")
        assert response.status_code in (401, 403)


class TestErrorHandler:
    async def test_validation_error_is_400(self):
        response = await fixmo_error_handler(_request(), ValidationError("Invalid status"))
        assert response.status_code == 400
        assert json.loads(response.body) == {
            "success": False, "message": "Invalid status", "detail": None,
        }

    async def test_conflict_carries_detail(self):
        exc = ConflictError("Slot taken", detail={"appointment_id": "a1"})
        response = await fixmo_error_handler(_request(), exc)
        assert response.status_code == 409
        assert json.loads(response.body)["detail"] == {"appointment_id": "a1"}

    async def test_not_found_is_404(self):
        response = await fixmo_error_handler(_request(), NotFoundError("Appointment not found"))
        assert response.status_code == 404


class TestLifespan:
    async def test_starts_and_stops_workers(self):
        started = []

        def _worker(name):
            async def run():
                started.append(name)
                await asyncio.sleep(3600)
            return run

        with (
            patch("fixmo.workers.outbox_dispatcher.run_outbox_dispatcher", _worker("outbox")),
            patch("fixmo.workers.conversation_reconciler.run_conversation_reconciler", _worker("reconciler")),
            patch("fixmo.workers.warranty_sweeper.run_warranty_sweeper", _worker("sweeper")),
            patch("fixmo.utils.redis_client.close_redis", new_callable=AsyncMock) as mock_close,
        ):
            async with lifespan(FastAPI()):
                await asyncio.sleep(0.01)

        assert sorted(started) == ["outbox", "reconciler", "sweeper"]
        mock_close.assert_awaited_once()
