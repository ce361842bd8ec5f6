"""Tests for health check and metrics endpoints."""

from __future__ import annotations

from fastapi.testclient import TestClient

from parley.services.factory import Backends


class TestHealthEndpoints:
    """Tests for /health and /health/detailed endpoints."""

    def test_health_basic(self, test_client) -> None:
        """Test GET /health returns 200 with status=healthy."""
        response = test_client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_health_detailed_structure(self, test_client) -> None:
        """Test GET /health/detailed returns expected structure."""
        response = test_client.get("/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "0.1.0"
        assert data["active_sessions"] == 0
        assert data["max_sessions"] == 100

    def test_health_detailed_checks_backends(self, test_client) -> None:
        """Test each backend is reported with its provider."""
        checks = test_client.get("/health/detailed").json()["checks"]

        assert checks == {"asr": "http: ok", "llm": "http: ok", "tts": "http: ok"}


class TestHealthDegraded:
    """Tests for degraded health scenarios."""

    def test_unavailable_backend(
        self, app_factory, stt_factory, llm_factory, tts_factory
    ) -> None:
        llm = llm_factory()
        llm.healthy = False
        backends = Backends(stt=stt_factory(), llm=llm, tts=tts_factory())

        with TestClient(app_factory(backends=backends)) as client:
            data = client.get("/health/detailed").json()

        assert data["status"] == "degraded"
        assert data["checks"]["llm"] == "http: unavailable"

    def test_health_basic_always_healthy(self, app_factory, stt_factory, llm_factory, tts_factory) -> None:
        llm = llm_factory()
        llm.healthy = False
        backends = Backends(stt=stt_factory(), llm=llm, tts=tts_factory())

        with TestClient(app_factory(backends=backends)) as client:
            assert client.get("/health").json()["status"] == "healthy"


class TestMetricsEndpoint:
    """Tests for /metrics."""

    def test_metrics_exposed(self, test_client) -> None:
        response = test_client.get("/metrics")

        assert response.status_code == 200
        assert "parley_active_sessions" in response.text
