"""Tests for FastAPI application endpoints.

Tests cover:
- Health check endpoint (/health)
- Root endpoint (/) API metadata
- Router registration
"""

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from subsync.main import app


@pytest.fixture
def client() -> TestClient:
    """Create FastAPI test client.

    Returns:
        TestClient: Synchronous client for testing FastAPI endpoints.
    """
    return TestClient(app)


class TestHealthEndpoint:
    """Tests for /health endpoint."""

    def test_health_endpoint_returns_healthy_status(self, client: TestClient) -> None:
        """
        GIVEN: FastAPI application is running
        WHEN: GET request to /health endpoint
        THEN: Returns 200 with status="healthy"
        """
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "subscription-sync"
        assert isinstance(data["database_configured"], bool)


class TestRootEndpoint:
    def test_root_endpoint_returns_metadata(self, client: TestClient) -> None:
        response = client.get("/")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "service": "Subscription Sync",
            "version": "0.1.0",
            "docs": "/docs",
            "health": "/health",
        }


class TestRoutes:
    @pytest.mark.parametrize(
        "path",
        [
            "/api/v1/sync/progress",
            "/api/v1/sync/cancel",
            "/api/v1/sync/lock",
            "/api/v1/sync/subscriptions",
            "/api/v1/sync/videos",
            "/api/v1/sync/quota",
            "/api/v1/channels",
            "/api/v1/channels/health",
            "/api/v1/channels/health/revive",
            "/api/v1/alerts",
            "/api/v1/alerts/acknowledge",
            "/api/v1/cron/retry-dead-channels",
            "/api/v1/cron/update-activity-levels",
            "/api/v1/cron/cleanup-progress",
            "/api/v1/cron/refresh/{activity_level}",
            "/api/v1/cron/resume-paused-syncs",
        ],
    )
    def test_route_registered(self, path: str) -> None:
        assert path in {route.path for route in app.routes}
