"""Health check endpoints.

Provides endpoints for monitoring service health and readiness.
"""

from fastapi import APIRouter, Request
from pydantic import BaseModel

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str
    service: str
    version: str


class ReadinessResponse(BaseModel):
    """Readiness response schema."""

    status: str
    payment_circuit: str
    active_sessions: int


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Check service health.

    Returns:
        Health status with service name and version.
    """
    return HealthResponse(
        status="healthy",
        service="storefront-checkout",
        version=request.app.state.config.api_version,
    )


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request) -> ReadinessResponse:
    """Check if service is ready to accept requests.

    Reports "degraded" while the payment gateway circuit is open.
    """
    service = request.app.state.checkout_service
    circuit = service.payment_adapter.breaker.state.value
    return ReadinessResponse(
        status="ready" if circuit != "open" else "degraded",
        payment_circuit=circuit,
        active_sessions=len(service.repository),
    )
