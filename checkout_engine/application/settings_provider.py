"""Store settings cache.

Tax and shipping settings change rarely but are read on every pricing
computation. The provider keeps one cached copy per instance; the owner of
the instance decides its scope (one per application, one per test).
"""

import asyncio
import time
from collections.abc import Callable

import structlog

from checkout_engine.application.ports import SettingsSource
from checkout_engine.domain.exceptions import DomainError, ErrorKind
from checkout_engine.domain.value_objects import DEFAULT_CURRENCY, StoreSettings
from checkout_engine.infrastructure.service_clients import ServiceClientError

logger = structlog.get_logger()


class SettingsProvider:
    """Cached, de-duplicated access to store settings.

    - A fresh cached value is returned without I/O.
    - Concurrent callers during a refresh share one in-flight fetch.
    - A failed or timed-out fetch never reaches the caller: the last
      known good value is served, or the built-in defaults if there is
      none. The next refresh is attempted after ``retry_after_seconds``.
    """

    def __init__(
        self,
        source: SettingsSource,
        ttl_seconds: float = 300.0,
        timeout_seconds: float = 3.0,
        retry_after_seconds: float = 30.0,
        currency: str = DEFAULT_CURRENCY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize provider.

        Args:
            source: Settings service client.
            ttl_seconds: How long a fetched value stays fresh.
            timeout_seconds: Bound on one fetch.
            retry_after_seconds: Pause between refresh attempts after a failure.
            currency: Currency of the default prices.
            clock: Monotonic clock in seconds.
        """
        self.source = source
        self.ttl_seconds = ttl_seconds
        self.timeout_seconds = timeout_seconds
        self.retry_after_seconds = retry_after_seconds
        self.currency = currency
        self._clock = clock
        self._value: StoreSettings | None = None
        self._expires_at = 0.0
        self._pending: asyncio.Task[StoreSettings] | None = None
        self.fetch_count = 0

    def _is_fresh(self) -> bool:
        return self._clock() < self._expires_at

    def snapshot(self) -> StoreSettings:
        """Current settings without I/O: cached value or defaults."""
        return self._value or StoreSettings.defaults(self.currency)

    def invalidate(self) -> None:
        """Drop the cached value so the next ``get`` refetches."""
        self._value = None
        self._expires_at = 0.0

    async def get(self) -> StoreSettings:
        """Get store settings, refreshing them when stale.

        Returns:
            Fetched, cached, last known good or default settings.
        """
        if self._is_fresh():
            return self.snapshot()
        if self._pending is None:
            self._pending = asyncio.ensure_future(self._refresh())
        return await asyncio.shield(self._pending)

    async def _refresh(self) -> StoreSettings:
        self.fetch_count += 1
        try:
            tax, shipping = await asyncio.wait_for(
                asyncio.gather(
                    self.source.get_tax_settings(),
                    self.source.get_shipping_settings(),
                ),
                timeout=self.timeout_seconds,
            )
        except (ServiceClientError, ValueError, DomainError, asyncio.TimeoutError) as e:
            logger.warning(
                "Store settings fetch failed, using fallback",
                error_code=ErrorKind.SETTINGS_FETCH_FAILED.value,
                error=str(e) or type(e).__name__,
                has_last_known_good=self._value is not None,
            )
            self._expires_at = self._clock() + self.retry_after_seconds
            return self.snapshot()
        else:
            self._value = StoreSettings(tax=tax, shipping=shipping)
            self._expires_at = self._clock() + self.ttl_seconds
            logger.debug("Store settings refreshed", tax_rate=str(tax.rate))
            return self._value
        finally:
            self._pending = None
