"""Tests for health check route."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from src.api.main import create_app
from src.saas.manager import SubscriptionManager


@pytest.fixture()
def client(manager: SubscriptionManager) -> TestClient:
    """Create a test client around an injected in-memory manager."""
    app = create_app(manager=manager)
    return TestClient(app)


class TestHealthEndpoint:
    def test_health_returns_ok(self, client: TestClient) -> None:
        response = client.get("/api/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["version"] == "0.1.0"

    def test_health_env(self, client: TestClient) -> None:
        response = client.get("/api/health")
        data = response.json()
        assert data["environment"] in ("dev", "prod")

    def test_health_needs_no_auth(self, client: TestClient) -> None:
        response = client.get("/api/health", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 200

    def test_health_reports_wiring(self, client: TestClient) -> None:
        data = client.get("/api/health").json()
        assert data["store_backend"] in ("memory", "postgres")
        assert data["concurrent_backend"] in ("store", "redis")
        assert data["pending_notifications"] == 0
