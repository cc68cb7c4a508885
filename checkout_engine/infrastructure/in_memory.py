"""In-memory collaborators for local runs and tests.

Used in place of the cart and order services when no service URLs are
configured. The order store enforces the same idempotency contract as the
real order service.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

import structlog

from checkout_engine.domain.value_objects import CartLine
from checkout_engine.infrastructure.service_clients import ServiceClientError

logger = structlog.get_logger()


class InMemoryCart:
    """Cart held in process memory."""

    def __init__(self, lines: list[CartLine] | None = None) -> None:
        self._lines: list[CartLine] = list(lines or [])

    async def get_lines(self) -> list[CartLine]:
        return list(self._lines)

    async def clear(self) -> None:
        self._lines.clear()

    def replace_lines(self, lines: list[CartLine]) -> None:
        """Swap the cart contents, as a quantity edit in another tab would."""
        self._lines = list(lines)


@dataclass
class StoredOrder:
    """An order accepted by the in-memory store.

    Attributes:
        order_id: Generated order identifier.
        idempotency_key: Key the order was created under.
        payload: Order payload as submitted.
        request_hash: Hash of the payload for conflict detection.
        created_at: When the order was stored.
    """

    order_id: str
    idempotency_key: str
    payload: dict[str, Any]
    request_hash: str
    created_at: datetime


def compute_request_hash(body: dict[str, Any]) -> str:
    """Compute hash of a request body for conflict detection.

    Args:
        body: Request body.

    Returns:
        SHA-256 hex digest of the canonical JSON form.
    """
    payload = json.dumps(body, sort_keys=True, default=str)
    return hashlib.sha256(payload.encode()).hexdigest()


class InMemoryOrderStore:
    """Order persistence with idempotency-key de-duplication.

    Replaying a key with the same payload returns the original order;
    replaying it with a different payload is a conflict.
    """

    def __init__(self) -> None:
        self._orders: dict[str, StoredOrder] = {}
        self._by_idempotency_key: dict[str, str] = {}
        self.create_calls = 0

    async def create_order(self, payload: dict[str, Any], idempotency_key: str) -> str:
        """Persist an order once per idempotency key.

        Args:
            payload: Serialized order payload.
            idempotency_key: Key shared by every attempt of one checkout.

        Returns:
            Order ID.

        Raises:
            ServiceClientError: With status 409 when the key was already
                used with a different payload.
        """
        self.create_calls += 1
        request_hash = compute_request_hash(payload)

        existing_id = self._by_idempotency_key.get(idempotency_key)
        if existing_id is not None:
            existing = self._orders[existing_id]
            if existing.request_hash != request_hash:
                logger.warning(
                    "Idempotency key reused with different request body",
                    idempotency_key=idempotency_key,
                )
                raise ServiceClientError(
                    "orders",
                    "Idempotency key already used with different request body",
                    409,
                )
            logger.info(
                "Returning existing order for idempotency key",
                idempotency_key=idempotency_key,
                order_id=existing_id,
            )
            return existing_id

        order_id = f"ord_{uuid4().hex[:16]}"
        self._orders[order_id] = StoredOrder(
            order_id=order_id,
            idempotency_key=idempotency_key,
            payload=payload,
            request_hash=request_hash,
            created_at=datetime.now(timezone.utc),
        )
        self._by_idempotency_key[idempotency_key] = order_id
        logger.info("Order stored", order_id=order_id, idempotency_key=idempotency_key)
        return order_id

    def get(self, order_id: str) -> StoredOrder | None:
        return self._orders.get(order_id)

    def list_all(self) -> list[StoredOrder]:
        """List stored orders, oldest first."""
        return sorted(self._orders.values(), key=lambda o: o.created_at)
