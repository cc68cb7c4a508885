"""Checkout service main application module.

This module wires the checkout service from configuration, initializes the
FastAPI application and configures middleware, routers, exception handlers
and startup/shutdown events.
"""

from collections.abc import Callable
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from checkout_engine.api.checkouts import router as checkouts_router
from checkout_engine.api.health import router as health_router
from checkout_engine.api.middleware import setup_middleware
from checkout_engine.application.checkout_service import CheckoutService, CheckoutSessionRepository
from checkout_engine.application.coupon_ledger import CouponLedger
from checkout_engine.application.order_submitter import OrderSubmitter
from checkout_engine.application.payment_adapter import BackoffPolicy, CircuitBreaker, PaymentAdapter
from checkout_engine.application.ports import Cart
from checkout_engine.application.settings_provider import SettingsProvider
from checkout_engine.domain.value_objects import Money
from checkout_engine.infrastructure.config import Settings, settings
from checkout_engine.infrastructure.logging_config import configure_logging
from checkout_engine.infrastructure.payment_gateway import PaymentGatewayClient
from checkout_engine.infrastructure.service_clients import (
    CartServiceClient,
    CouponClient,
    OrderServiceClient,
    RemoteCart,
    ServiceClient,
    StoreSettingsClient,
)

logger = structlog.get_logger()


# ============================================================================
# Wiring
# ============================================================================


def build_checkout_service(config: Settings) -> tuple[CheckoutService, Callable[[str], Cart], list[ServiceClient]]:
    """Build the checkout service and its HTTP collaborators.

    Args:
        config: Application settings.

    Returns:
        The service, a factory binding cart IDs to carts, and the HTTP
        clients to close on shutdown.
    """
    settings_client = StoreSettingsClient(
        config.store_settings_url, timeout=config.settings_timeout, currency=config.currency
    )
    coupon_client = CouponClient(config.coupon_service_url, timeout=config.coupon_timeout)
    cart_client = CartServiceClient(config.cart_service_url, timeout=config.cart_timeout, currency=config.currency)
    order_client = OrderServiceClient(config.order_service_url, timeout=config.order_timeout)
    gateway_client = PaymentGatewayClient(
        config.payment_gateway_url,
        api_key=config.payment_gateway_api_key,
        timeout=config.payment_timeout,
    )

    service = CheckoutService(
        settings_provider=SettingsProvider(
            settings_client,
            ttl_seconds=config.settings_cache_ttl,
            timeout_seconds=config.settings_timeout,
            currency=config.currency,
        ),
        coupon_ledger=CouponLedger(coupon_client, timeout_seconds=config.coupon_timeout),
        payment_adapter=PaymentAdapter(
            gateway_client,
            backoff=BackoffPolicy(
                attempts=config.gateway_max_attempts,
                backoff_initial=config.gateway_backoff_initial,
                backoff_factor=config.gateway_backoff_factor,
                backoff_max=config.gateway_backoff_max,
            ),
            breaker=CircuitBreaker(
                failure_threshold=config.gateway_breaker_threshold,
                cooldown_seconds=config.gateway_breaker_cooldown,
            ),
        ),
        order_submitter=OrderSubmitter(
            order_client,
            confirmation_path=config.confirmation_path,
            completed_ttl_seconds=config.completed_order_ttl,
        ),
        repository=CheckoutSessionRepository(
            session_ttl_seconds=config.session_ttl,
            completed_ttl_seconds=config.completed_order_ttl,
        ),
        require_authentication=config.require_authentication,
        login_path=config.login_path,
        checkout_path=config.checkout_path,
        priority_shipping_price=Money.parse(config.priority_shipping_price, config.currency),
        currency=config.currency,
    )

    def cart_factory(cart_id: str) -> Cart:
        return RemoteCart(cart_client, cart_id)

    clients: list[ServiceClient] = [settings_client, coupon_client, cart_client, order_client, gateway_client]
    return service, cart_factory, clients


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Handle application startup and shutdown events.

    Args:
        app: The FastAPI application instance.

    Yields:
        None after startup, cleanup happens after yield.
    """
    config: Settings = app.state.config
    logger.info(
        "Starting checkout service",
        version=config.api_version,
        debug=config.debug,
        require_authentication=app.state.checkout_service.require_authentication,
    )

    yield

    logger.info("Shutting down checkout service")
    for client in app.state.http_clients:
        await client.close()


# ============================================================================
# Exception Handlers
# ============================================================================


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent format."""
    request_id = getattr(request.state, "request_id", None)

    detail = exc.detail
    if isinstance(detail, dict):
        content = {
            "error_code": detail.get("error_code", "ERROR"),
            "message": detail.get("message", str(detail)),
            "details": detail.get("details", {}),
            "retryable": detail.get("retryable", False),
            "retry_policy": detail.get("retry_policy", "none"),
            "redirect_path": detail.get("redirect_path"),
        }
    else:
        content = {
            "error_code": "ERROR",
            "message": str(detail),
            "details": {},
            "retryable": False,
            "retry_policy": "none",
            "redirect_path": None,
        }
    content["request_id"] = request_id

    return JSONResponse(status_code=exc.status_code, content=content)


# ============================================================================
# Application Factory
# ============================================================================


def create_app(
    service: CheckoutService | None = None,
    cart_factory: Callable[[str], Cart] | None = None,
    config: Settings | None = None,
) -> FastAPI:
    """Create the FastAPI application.

    Args:
        service: Pre-built checkout service; built from ``config`` if omitted.
        cart_factory: Factory binding cart IDs to carts; required with ``service``.
        config: Application settings.

    Returns:
        Configured application.
    """
    config = config or settings
    clients: list[ServiceClient] = []
    if service is None:
        service, cart_factory, clients = build_checkout_service(config)
    if cart_factory is None:
        raise ValueError("cart_factory is required when a service is provided")

    app = FastAPI(
        title="Storefront Checkout",
        description="Checkout orchestration and pricing engine",
        version=config.api_version,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.config = config
    app.state.checkout_service = service
    app.state.cart_factory = cart_factory
    app.state.http_clients = clients

    # CORS middleware (must be added before custom middleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Setup custom middleware (request ID, error handling)
    setup_middleware(app)

    app.add_exception_handler(HTTPException, http_exception_handler)

    app.include_router(health_router, tags=["Health"])
    app.include_router(checkouts_router)

    return app


configure_logging(settings.log_level, settings.log_json)
app = create_app()
