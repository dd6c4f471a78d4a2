# tests/test_main.py
"""
Tests for the application wiring: health endpoints and the payment gate.
"""
from fastapi.testclient import TestClient

from app.main import app, gate_config
from app.x402.middleware import PaymentGateMiddleware

client = TestClient(app)


class TestHealthEndpoints:
    """Test the free health endpoints."""

    def test_root(self):
        """Root reports service identity and version."""
        response = client.get("/")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert "service" in body
        assert "version" in body

    def test_health(self):
        """Health returns ok with a timestamp."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert "timestamp" in response.json()


class TestGateWiring:
    """Test that the gate is installed on the application."""

    def test_gate_installed(self):
        """The payment gate middleware wraps the application."""
        assert any(m.cls is PaymentGateMiddleware for m in app.user_middleware)

    def test_priced_routes_in_catalog(self):
        """Weather and pro chat are priced by default."""
        assert gate_config.catalog.is_priced("/weather")
        assert gate_config.catalog.is_priced("/chat/pro")
        assert not gate_config.catalog.is_priced("/chat")
        assert not gate_config.catalog.is_priced("/health")

    def test_weather_not_served_for_free(self):
        """An unpaid weather request is never answered with data."""
        response = client.get("/weather")

        if gate_config.enabled:
            assert response.status_code in (402, 503)
        else:
            assert response.status_code == 200
