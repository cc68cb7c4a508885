"""Tests for API middleware and error rendering."""

import pytest
from fastapi.testclient import TestClient

from checkout_engine.api.middleware import checkout_id_from_path
from checkout_engine.application.checkout_service import CheckoutService
from checkout_engine.infrastructure.config import Settings
from checkout_engine.infrastructure.in_memory import InMemoryCart
from checkout_engine.main import create_app


class TestRequestContextMiddleware:
    """Tests for request correlation."""

    def test_generates_request_id_if_not_provided(self, client: TestClient) -> None:
        """Should generate request ID if not in request headers."""
        response = client.get("/health")
        assert response.status_code == 200
        assert "X-Request-ID" in response.headers
        # UUID format
        assert len(response.headers["X-Request-ID"]) == 36

    def test_uses_provided_request_id(self, client: TestClient) -> None:
        """Should use request ID from request headers."""
        custom_id = "custom-request-id-12345"
        response = client.get("/health", headers={"X-Request-ID": custom_id})
        assert response.headers["X-Request-ID"] == custom_id

    def test_error_body_carries_request_id(self, client: TestClient) -> None:
        response = client.get("/checkouts/unknown", headers={"X-Request-ID": "req-404"})

        assert response.status_code == 404
        assert response.json()["request_id"] == "req-404"

    @pytest.mark.parametrize(
        ("path", "expected"),
        [
            ("/checkouts/abc-123", "abc-123"),
            ("/checkouts/abc-123/pricing", "abc-123"),
            ("/checkouts", None),
            ("/health", None),
        ],
    )
    def test_checkout_id_from_path(self, path: str, expected: str | None) -> None:
        assert checkout_id_from_path(path) == expected


class TestUnhandledErrorMiddleware:
    """Tests for unhandled exception handling."""

    def test_unhandled_exception_returns_internal_error(self, checkout_service: CheckoutService) -> None:
        app = create_app(service=checkout_service, cart_factory=lambda cart_id: InMemoryCart())

        @app.get("/boom")
        async def boom() -> None:
            raise RuntimeError("database exploded")

        response = TestClient(app).get("/boom")

        assert response.status_code == 500
        data = response.json()
        assert data["error_code"] == "INTERNAL_ERROR"
        assert "exploded" not in data["message"]
        assert data["retryable"] is False


class TestCreateApp:
    """Tests for the application factory."""

    def test_service_without_cart_factory_is_rejected(self, checkout_service: CheckoutService) -> None:
        with pytest.raises(ValueError):
            create_app(service=checkout_service)

    def test_config_is_kept_on_app_state(self, checkout_service: CheckoutService) -> None:
        config = Settings(api_version="9.9.9", debug=True)
        app = create_app(service=checkout_service, cart_factory=lambda cart_id: InMemoryCart(), config=config)

        with TestClient(app) as client:
            response = client.get("/health")

        assert app.state.config is config
        assert response.json()["version"] == "9.9.9"
