"""
Side-Effect Dispatcher

Hands committed entries to downstream consumers (notifications, analytics,
real-time pushes) through a bounded in-process queue.

RULES:
- Publishing happens only AFTER the entry is committed
- Ledger durability never depends on delivery: a full queue drops the
  message with a warning, a failing subscriber never reaches the caller
- Delivery is at-least-once with consumer-side dedup on
  (subscriber, entry_id) through a bounded TTL cache, so a republished
  entry (idempotent replay) is not delivered twice
- A failing subscriber is retried up to max_delivery_attempts, then the
  message is dropped and logged

CONFIGURATION:
- AUDITCHAIN_DISPATCH_ENABLED: Deliver side effects (default: true)
- AUDITCHAIN_DISPATCH_QUEUE_SIZE: Queue capacity (default: 1000)
- AUDITCHAIN_DISPATCH_MAX_ATTEMPTS: Attempts per delivery (default: 3)
- AUDITCHAIN_DISPATCH_RETRY_DELAY_SECONDS: Pause before a retry (default: 0.5)
- AUDITCHAIN_DISPATCH_DEDUP_SIZE: Remembered deliveries (default: 10000)
- AUDITCHAIN_DISPATCH_DEDUP_TTL_SECONDS: How long they are remembered (default: 3600)

USAGE:
    dispatcher = SideEffectDispatcher()
    dispatcher.subscribe("notifications", send_notification)
    dispatcher.start()
    ...
    dispatcher.publish(entry)
    ...
    dispatcher.stop()
"""

import os
import queue
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from ..observability import get_logger, get_metrics
from ..schemas import LedgerEntry
from .cache import TTLCache

logger = get_logger(__name__)

Subscriber = Callable[[LedgerEntry], None]


@dataclass
class DispatchConfig:
    """Configuration for the side-effect dispatcher."""
    enabled: bool = True
    queue_size: int = 1000
    max_delivery_attempts: int = 3
    retry_delay_seconds: float = 0.5
    dedup_size: int = 10_000
    dedup_ttl_seconds: float = 3600.0
    poll_interval_seconds: float = 0.5

    @classmethod
    def from_env(cls) -> "DispatchConfig":
        """Load configuration from environment variables."""
        return cls(
            enabled=os.environ.get("AUDITCHAIN_DISPATCH_ENABLED", "true").lower() in ("1", "true", "yes"),
            queue_size=int(os.environ.get("AUDITCHAIN_DISPATCH_QUEUE_SIZE", "1000")),
            max_delivery_attempts=int(os.environ.get("AUDITCHAIN_DISPATCH_MAX_ATTEMPTS", "3")),
            retry_delay_seconds=float(os.environ.get("AUDITCHAIN_DISPATCH_RETRY_DELAY_SECONDS", "0.5")),
            dedup_size=int(os.environ.get("AUDITCHAIN_DISPATCH_DEDUP_SIZE", "10000")),
            dedup_ttl_seconds=float(os.environ.get("AUDITCHAIN_DISPATCH_DEDUP_TTL_SECONDS", "3600")),
        )


@dataclass
class _Delivery:
    entry: LedgerEntry
    subscriber: str
    attempt: int = 1


class SideEffectDispatcher:
    """
    Bounded queue plus one background worker thread.

    Can also be driven synchronously with process_pending() (tests, CLI).
    """

    def __init__(self, config: Optional[DispatchConfig] = None, dedup_cache: Optional[TTLCache] = None):
        self._config = config or DispatchConfig.from_env()
        self._queue: "queue.Queue[_Delivery]" = queue.Queue(maxsize=self._config.queue_size)
        self._subscribers: dict[str, Subscriber] = {}
        self._delivered = dedup_cache if dedup_cache is not None else TTLCache(
            capacity=self._config.dedup_size,
            ttl_seconds=self._config.dedup_ttl_seconds,
        )
        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def config(self) -> DispatchConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def subscribe(self, name: str, handler: Subscriber) -> None:
        """Register a consumer. Names are the dedup scope and must be unique."""
        if name in self._subscribers:
            raise ValueError(f"Subscriber {name!r} already registered")
        self._subscribers[name] = handler

    def unsubscribe(self, name: str) -> None:
        self._subscribers.pop(name, None)

    # ------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------

    def publish(self, entry: LedgerEntry) -> bool:
        """
        Queue a committed entry for every subscriber.

        Never blocks and never raises. Returns False if anything was dropped.
        """
        if not self._config.enabled:
            return False

        ok = True
        for name in list(self._subscribers):
            try:
                self._queue.put_nowait(_Delivery(entry=entry, subscriber=name))
            except queue.Full:
                ok = False
                get_metrics().increment("side_effects_dropped")
                logger.warning(
                    "Side-effect queue full, dropping delivery",
                    chain_id=entry.chain_id,
                    sequence=entry.sequence,
                    subscriber=name,
                )
        return ok

    # ------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------

    def start(self) -> None:
        """Start the background worker."""
        if not self._config.enabled:
            logger.info("Side-effect dispatcher disabled (set AUDITCHAIN_DISPATCH_ENABLED=1 to enable)")
            return

        if self._running:
            logger.warning("Side-effect dispatcher already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="auditchain-dispatch", daemon=True)
        self._thread.start()
        logger.info(
            "Side-effect dispatcher started",
            queue_size=self._config.queue_size,
            subscribers=sorted(self._subscribers),
        )

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the worker. Undelivered messages stay queued."""
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

        self._running = False
        logger.info("Side-effect dispatcher stopped", pending=self.pending)

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                delivery = self._queue.get(timeout=self._config.poll_interval_seconds)
            except queue.Empty:
                self.sweep_dedup()
                continue
            try:
                _, retry = self._deliver(delivery)
                if retry is not None:
                    self._stop_event.wait(self._config.retry_delay_seconds)
                    self._requeue(retry)
            finally:
                self._queue.task_done()

    def process_pending(self) -> int:
        """
        Deliver everything currently queued, synchronously.

        Retries go back on the queue for the next round. Returns the number
        of successful deliveries.
        """
        delivered = 0
        retries: list[_Delivery] = []
        for _ in range(self._queue.qsize()):
            try:
                delivery = self._queue.get_nowait()
            except queue.Empty:
                break
            try:
                ok, retry = self._deliver(delivery)
                if ok:
                    delivered += 1
                elif retry is not None:
                    retries.append(retry)
            finally:
                self._queue.task_done()

        for retry in retries:
            self._requeue(retry)
        self.sweep_dedup()
        return delivered

    def sweep_dedup(self) -> int:
        """Drop expired dedup keys. Runs whenever the worker is idle."""
        purged = self._delivered.purge_expired()
        if purged:
            logger.debug("Expired dedup keys purged", purged=purged, remaining=len(self._delivered))
        return purged

    def drain(self, timeout: float = 5.0) -> bool:
        """Wait until the queue is empty and idle. Returns False on timeout."""
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def _deliver(self, delivery: _Delivery) -> tuple[bool, Optional[_Delivery]]:
        """Run one delivery. Returns (handler succeeded, retry to schedule)."""
        handler = self._subscribers.get(delivery.subscriber)
        if handler is None:
            return False, None

        key = (delivery.subscriber, delivery.entry.entry_id)
        if key in self._delivered:
            logger.debug("Duplicate delivery skipped", subscriber=delivery.subscriber)
            return False, None

        metrics = get_metrics()
        try:
            handler(delivery.entry)
        except Exception as e:
            metrics.increment("side_effects_failed")
            if delivery.attempt < self._config.max_delivery_attempts:
                logger.warning(
                    "Side-effect delivery failed, will retry",
                    subscriber=delivery.subscriber,
                    chain_id=delivery.entry.chain_id,
                    sequence=delivery.entry.sequence,
                    attempt=delivery.attempt,
                    error=str(e),
                )
                return False, _Delivery(delivery.entry, delivery.subscriber, delivery.attempt + 1)

            metrics.increment("side_effects_dropped")
            logger.error(
                "Side-effect delivery dropped after retries",
                subscriber=delivery.subscriber,
                chain_id=delivery.entry.chain_id,
                sequence=delivery.entry.sequence,
                attempts=delivery.attempt,
                error=str(e),
            )
            return False, None

        self._delivered.add(key)
        metrics.increment("side_effects_delivered")
        return True, None

    def _requeue(self, delivery: _Delivery) -> None:
        try:
            self._queue.put_nowait(delivery)
        except queue.Full:
            get_metrics().increment("side_effects_dropped")
            logger.warning(
                "Side-effect queue full, dropping retry",
                subscriber=delivery.subscriber,
                sequence=delivery.entry.sequence,
            )

    def status(self) -> dict:
        return {
            "enabled": self._config.enabled,
            "running": self._running,
            "pending": self.pending,
            "subscribers": sorted(self._subscribers),
            "dedup_entries": len(self._delivered),
        }
