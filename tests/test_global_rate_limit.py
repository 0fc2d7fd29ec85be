"""Integration tests for the per-address limit on every ``/api/`` route."""

import pytest
from fastapi.testclient import TestClient

from habla import app as app_module
from habla.service.runtime import reset_runtime_for_tests


def _from_address(host: str):
    """Serve the app as if every request came from ``host``."""

    async def asgi(scope, receive, send):
        if scope["type"] == "http":
            scope = {**scope, "client": (host, 50000)}
        await app_module.app(scope, receive, send)

    return asgi


@pytest.fixture
def low_limit(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_MAX", "2")
    reset_runtime_for_tests()


@pytest.mark.usefixtures("low_limit")
class TestGlobalRateLimit:
    def test_third_api_request_is_rejected(self):
        with TestClient(_from_address("10.0.0.1")) as client:
            assert client.get("/api/health").status_code == 200
            assert client.get("/api/health").status_code == 200

            response = client.get("/api/health")

        assert response.status_code == 429
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "rate_limited"
        assert body["message"] == "Too many attempts. Please try again later."
        assert response.headers["Retry-After"] == "900"

    def test_paths_outside_api_are_not_counted(self):
        with TestClient(_from_address("10.0.0.1")) as client:
            for _ in range(3):
                assert client.get("/health").status_code == 200

            assert client.get("/api/health").status_code == 200

    def test_preflight_requests_are_not_counted(self):
        preflight = {
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "GET",
        }
        with TestClient(_from_address("10.0.0.1")) as client:
            for _ in range(3):
                response = client.options("/api/health", headers=preflight)
                assert response.status_code == 200

            assert client.get("/api/health").status_code == 200

    def test_budget_is_per_client_address(self):
        with TestClient(_from_address("10.0.0.1")) as first:
            for _ in range(2):
                first.get("/api/health")
            assert first.get("/api/health").status_code == 429

        with TestClient(_from_address("10.0.0.2")) as second:
            assert second.get("/api/health").status_code == 200

        with TestClient(_from_address("10.0.0.1")) as first_again:
            assert first_again.get("/api/health").status_code == 429
