"""
In-memory entitlement cache for the Entitlements service.

Holds the most recently fetched subscription set per customer and answers
access checks from it. Stale or invalidated records are refreshed through the
injected fetcher before a decision is made; if the platform cannot be reached
a recent-enough record is used as a fallback, otherwise access is denied.
"""

import asyncio
import time
from collections import OrderedDict
from dataclasses import asdict
from typing import Any, Callable, Dict, Optional, Set

from shared.errors import EntitlementError, NotFoundError, StaleRecordError, TransportError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..fetchers.base import SubscriptionFetcher
from ..models import AccessDecision, CacheStats, DecisionSource, EntitlementRecord
from .single_flight import SingleFlight

DEFAULT_TTL_SECONDS = 300.0
DEFAULT_HARD_CEILING_SECONDS = 24 * 60 * 60.0
DEFAULT_REFRESH_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_RECORDS = 10000


class EntitlementCache:
    """Per-customer subscription cache with single-flight refresh.

    Designed for use from a single asyncio event loop. Records are immutable
    and replaced wholesale, so a reader always sees a complete record.
    """

    def __init__(
        self,
        fetcher: SubscriptionFetcher,
        *,
        ttl: float = DEFAULT_TTL_SECONDS,
        hard_ceiling: float = DEFAULT_HARD_CEILING_SECONDS,
        refresh_timeout: float = DEFAULT_REFRESH_TIMEOUT_SECONDS,
        max_records: int = DEFAULT_MAX_RECORDS,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsCollector] = None,
    ):
        if ttl <= 0 or refresh_timeout <= 0:
            raise ValueError("ttl and refresh_timeout must be positive")
        if hard_ceiling < ttl:
            raise ValueError(f"hard_ceiling ({hard_ceiling}) must not be shorter than ttl ({ttl})")
        if max_records < 1:
            raise ValueError(f"max_records must be positive, got {max_records}")

        self.fetcher = fetcher
        self.ttl = ttl
        self.hard_ceiling = hard_ceiling
        self.refresh_timeout = refresh_timeout
        self.max_records = max_records
        self.metrics = metrics
        self.logger = get_logger("entitlements.cache")
        self.stats = CacheStats()

        self._clock = clock
        self._records: "OrderedDict[str, EntitlementRecord]" = OrderedDict()
        self._flights: SingleFlight[EntitlementRecord] = SingleFlight()
        self._invalidated_in_flight: Set[str] = set()
        self._housekeeping_task: Optional["asyncio.Task[None]"] = None

    @property
    def size(self) -> int:
        return len(self._records)

    def now(self) -> float:
        """Current reading of the cache clock."""
        return self._clock()

    def get_record(self, customer_id: str) -> Optional[EntitlementRecord]:
        """Return the cached record without refreshing it."""
        return self._records.get(customer_id)

    async def check_access(self, customer_id: str, required_product_id: str) -> AccessDecision:
        """Decide whether a customer may use a product."""
        record = self._lookup(customer_id)
        if record is not None and not record.is_stale(self._clock()):
            self.stats.hits += 1
            return self._decide(customer_id, required_product_id, record, DecisionSource.CACHE)

        self.stats.misses += 1
        try:
            record = await self.refresh(customer_id)
        except NotFoundError as e:
            return self._deny(customer_id, required_product_id, e)
        except EntitlementError as e:
            return self._fallback(customer_id, required_product_id, e)

        return self._decide(customer_id, required_product_id, record, DecisionSource.REFRESH)

    async def refresh(self, customer_id: str) -> EntitlementRecord:
        """Fetch a customer's subscriptions and swap in a new record.

        Concurrent calls for the same customer share one fetch. On failure the
        existing record is left untouched and the error is raised.
        """
        return await self._flights.do(customer_id, lambda: self._refresh_once(customer_id))

    def invalidate(self, customer_id: str) -> bool:
        """Mark a customer's record stale.

        The record stays cached as a fallback. Returns False when there was
        nothing cached; calling it again is harmless.
        """
        if customer_id in self._flights:
            # The in-flight fetch may predate the event that triggered this
            self._invalidated_in_flight.add(customer_id)

        record = self._records.get(customer_id)
        if record is None:
            return False

        self._records[customer_id] = record.mark_invalidated()
        self.stats.invalidations += 1
        self.logger.info("Invalidated entitlement record", customer_id=customer_id)
        return True

    def purge_expired(self) -> int:
        """Drop records too old to serve even as a fallback."""
        now = self._clock()
        expired = [
            customer_id
            for customer_id, record in self._records.items()
            if record.age(now) > self.hard_ceiling
        ]
        for customer_id in expired:
            del self._records[customer_id]

        if expired:
            self.stats.evictions += len(expired)
            self.logger.info("Purged expired entitlement records", count=len(expired))
            self._update_size_gauge()
        return len(expired)

    def start_housekeeping(self, interval: float) -> None:
        """Purge expired records every ``interval`` seconds until ``close()``."""
        if self._housekeeping_task is not None and not self._housekeeping_task.done():
            return
        self._housekeeping_task = asyncio.ensure_future(self._housekeeping_loop(interval))

    async def _housekeeping_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.purge_expired()

    def clear(self) -> None:
        """Drop every cached record."""
        self._records.clear()
        self._invalidated_in_flight.clear()
        self._update_size_gauge()

    async def close(self) -> None:
        """Stop housekeeping, abandon in-flight refreshes and clear the cache."""
        if self._housekeeping_task is not None:
            self._housekeeping_task.cancel()
            await asyncio.gather(self._housekeeping_task, return_exceptions=True)
            self._housekeeping_task = None
        await self._flights.cancel_all()
        self.clear()
        self.logger.info("Entitlement cache closed")

    def snapshot_stats(self) -> Dict[str, Any]:
        """Counters plus current occupancy."""
        return {
            **asdict(self.stats),
            "records": len(self._records),
            "in_flight": len(self._flights),
            "max_records": self.max_records,
        }

    async def _refresh_once(self, customer_id: str) -> EntitlementRecord:
        start_time = time.perf_counter()
        try:
            snapshots = await asyncio.wait_for(
                self.fetcher.list_subscriptions(customer_id),
                timeout=self.refresh_timeout
            )
        except asyncio.TimeoutError as e:
            error = TransportError(
                f"Refresh timed out after {self.refresh_timeout}s",
                details={"customer_id": customer_id, "timeout": self.refresh_timeout}
            )
            self._refresh_failed(customer_id, error, start_time)
            raise error from e
        except EntitlementError as e:
            self._refresh_failed(customer_id, e, start_time)
            raise
        except Exception as e:
            self.logger.error("Fetcher raised unexpected error", customer_id=customer_id, error=str(e), exc_info=True)
            error = TransportError(f"Fetcher failed: {e}", details={"customer_id": customer_id})
            self._refresh_failed(customer_id, error, start_time)
            raise error from e

        record = EntitlementRecord(
            customer_id=customer_id,
            subscriptions=tuple(snapshots),
            fetched_at=self._clock(),
            ttl=self.ttl,
            invalidated=customer_id in self._invalidated_in_flight,
        )
        self._invalidated_in_flight.discard(customer_id)
        self._store(record)

        self.stats.refreshes += 1
        if self.metrics:
            self.metrics.record_refresh("success", time.perf_counter() - start_time)
        self.logger.debug(
            "Refreshed entitlement record",
            customer_id=customer_id,
            subscriptions=len(record.subscriptions)
        )
        return record

    def _refresh_failed(self, customer_id: str, error: EntitlementError, start_time: float) -> None:
        self._invalidated_in_flight.discard(customer_id)
        self.stats.refresh_failures += 1
        if self.metrics:
            self.metrics.record_refresh(error.code.lower(), time.perf_counter() - start_time)
        self.logger.warning(
            "Entitlement refresh failed",
            customer_id=customer_id,
            code=error.code,
            error=error.message
        )

    def _lookup(self, customer_id: str) -> Optional[EntitlementRecord]:
        record = self._records.get(customer_id)
        if record is not None:
            self._records.move_to_end(customer_id)
        return record

    def _store(self, record: EntitlementRecord) -> None:
        self._records[record.customer_id] = record
        self._records.move_to_end(record.customer_id)
        while len(self._records) > self.max_records:
            evicted, _ = self._records.popitem(last=False)
            self.stats.evictions += 1
            self.logger.debug("Evicted least recently used record", customer_id=evicted)
        self._update_size_gauge()

    def _fallback(self, customer_id: str, product_id: str, error: EntitlementError) -> AccessDecision:
        record = self._records.get(customer_id)
        if record is None:
            return self._deny(customer_id, product_id, error)

        age = record.age(self._clock())
        if age > self.hard_ceiling:
            stale = StaleRecordError(customer_id, age, details={"cause": error.code})
            stale.__cause__ = error
            return self._deny(customer_id, product_id, stale, record)

        self.stats.fallbacks += 1
        self.logger.warning(
            "Serving entitlement from fallback record",
            customer_id=customer_id,
            age_seconds=round(age, 3),
            code=error.code
        )
        return self._decide(customer_id, product_id, record, DecisionSource.FALLBACK, error)

    def _deny(
        self,
        customer_id: str,
        product_id: str,
        error: EntitlementError,
        record: Optional[EntitlementRecord] = None,
    ) -> AccessDecision:
        self.stats.denials += 1
        self.logger.warning(
            "Denying access, no usable entitlement record",
            customer_id=customer_id,
            product_id=product_id,
            code=error.code
        )
        return self._decide(customer_id, product_id, record, DecisionSource.DENIED, error, granted=False)

    def _decide(
        self,
        customer_id: str,
        product_id: str,
        record: Optional[EntitlementRecord],
        source: DecisionSource,
        error: Optional[EntitlementError] = None,
        granted: Optional[bool] = None,
    ) -> AccessDecision:
        if granted is None:
            granted = record is not None and record.grants(product_id)
        if self.metrics:
            self.metrics.record_entitlement_check(granted, source.value)
        return AccessDecision(
            customer_id=customer_id,
            product_id=product_id,
            granted=granted,
            source=source,
            record=record,
            error=error,
        )

    def _update_size_gauge(self) -> None:
        if self.metrics:
            self.metrics.set_gauge("entitlement_cache_records", len(self._records))
