"""Shared fixtures for API tests."""

import pytest
from fastapi.testclient import TestClient

from checkout_engine.application.checkout_service import CheckoutService
from checkout_engine.infrastructure.in_memory import InMemoryCart
from checkout_engine.main import create_app


@pytest.fixture
def carts(cart: InMemoryCart) -> dict[str, InMemoryCart]:
    """Carts reachable by ID; unknown IDs resolve to an empty cart."""
    return {"cart-1": cart}


@pytest.fixture
def client(checkout_service: CheckoutService, carts: dict[str, InMemoryCart]) -> TestClient:
    """Create test client for an app wired to in-memory collaborators."""
    app = create_app(
        service=checkout_service,
        cart_factory=lambda cart_id: carts.get(cart_id, InMemoryCart()),
    )
    return TestClient(app)


@pytest.fixture
def member_headers() -> dict[str, str]:
    """Headers the storefront gateway sends for a logged-in buyer."""
    return {"X-Customer-ID": "cust_42"}
