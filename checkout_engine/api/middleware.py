"""HTTP middleware for the checkout API.

Every request gets a correlation ID that is echoed in the ``X-Request-ID``
header, bound into the structlog context together with the checkout being
worked on, and copied into error bodies.
"""

import re
import time
from typing import Callable
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from checkout_engine.api.schemas import ErrorResponse

logger = structlog.get_logger()

REQUEST_ID_HEADER = "X-Request-ID"

_CHECKOUT_PATH = re.compile(r"^/checkouts/(?P<checkout_id>[^/]+)")


def checkout_id_from_path(path: str) -> str | None:
    match = _CHECKOUT_PATH.match(path)
    return match.group("checkout_id") if match else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Correlates logs and responses of one request.

    Binds ``request_id`` (and ``checkout_id`` on checkout routes) into the
    log context for the duration of the request and logs one access line.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id

        context = {"request_id": request_id}
        checkout_id = checkout_id_from_path(request.url.path)
        if checkout_id:
            context["checkout_id"] = checkout_id
        structlog.contextvars.bind_contextvars(**context)

        started = time.perf_counter()
        response: Response | None = None
        try:
            response = await call_next(request)
        finally:
            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code if response is not None else 500,
                duration_ms=round((time.perf_counter() - started) * 1000, 2),
            )
            structlog.contextvars.unbind_contextvars(*context)

        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class UnhandledErrorMiddleware(BaseHTTPMiddleware):
    """Turns an exception escaping a route into a 500 ``INTERNAL_ERROR``.

    The exception text is logged but never sent to the buyer.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception:
            logger.exception("Unhandled exception", method=request.method, path=request.url.path)
            body = ErrorResponse(
                error_code="INTERNAL_ERROR",
                message="An internal error occurred",
                request_id=getattr(request.state, "request_id", None),
            )
            return JSONResponse(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                content=body.model_dump(),
            )


def setup_middleware(app: FastAPI) -> None:
    """Install the checkout middleware on ``app``.

    The last middleware added runs first, so the request context wraps the
    error handler and 500 responses still carry the request ID header.
    """
    app.add_middleware(UnhandledErrorMiddleware)
    app.add_middleware(RequestContextMiddleware)
