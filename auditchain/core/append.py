"""
Chain Append Engine

Appends normalized events to tenant-scoped chains under concurrent writers.

APPEND PROTOCOL (one attempt):
1. store.begin_append(chain_id) reads the tip (last_sequence, tip_hash)
2. entry_hash = H(canonical_payload : tip_hash : last_sequence + 1)
3. ctx.commit(entry) inserts; the storage uniqueness on (chain_id, sequence)
   is the only concurrency guard
4. SequenceConflict means another writer won the tip: back off, reload the
   tip and try again

RECORD TIME:
timestamp_utc never decreases along a chain. An event stamped before the
tip entry (normalized earlier, committed later) takes the tip's record time
and its canonical payload is rebuilt for that attempt.

BOUNDS:
- At most append_max_attempts attempts
- At most append_deadline_seconds wall time across all attempts
- Exhausting either raises ContentionError (retryable by the caller),
  never StorageUnavailable

IDEMPOTENCY:
The idempotency key is looked up (TTL cache, then store) before the first
attempt. A DuplicateIdempotencyKey on commit means a concurrent or earlier
copy of the same event won; the committed entry is returned instead of a
second one.

Writers on different chains never touch the same tip, so they never
contend. There are no application-level locks here.
"""

import random
import time
from datetime import datetime
from typing import Callable, Optional, TYPE_CHECKING

from ..observability import get_logger, get_metrics
from ..schemas import LedgerChain, LedgerEntry, NormalizedEvent
from .cache import TTLCache
from .config import LedgerConfig
from .errors import (
    ChainNotFound,
    ContentionError,
    DuplicateIdempotencyKey,
    SequenceConflict,
    StorageUnavailable,
    ValidationError,
)
from .hasher import CanonicalSerializationError, Hasher

if TYPE_CHECKING:
    from ..db.store import ChainTip, LedgerStore

logger = get_logger(__name__)


class ChainAppendEngine:
    """
    Optimistic, per-chain append with bounded retries.

    Thread-safe: all per-attempt state lives in the store's AppendContext.
    """

    def __init__(
        self,
        store: "LedgerStore",
        config: Optional[LedgerConfig] = None,
        idempotency_cache: Optional[TTLCache] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._store = store
        self._config = config or LedgerConfig.from_env()
        self._cache = idempotency_cache if idempotency_cache is not None else TTLCache(
            capacity=self._config.idempotency_cache_size,
            ttl_seconds=self._config.idempotency_cache_ttl_seconds,
        )
        self._sleep = sleep
        self._clock = clock

    @property
    def store(self) -> "LedgerStore":
        return self._store

    @property
    def config(self) -> LedgerConfig:
        return self._config

    @property
    def idempotency_cache(self) -> TTLCache:
        return self._cache

    # ================================================================
    # WRITE PATH
    # ================================================================

    def append(self, chain_id: str, event: NormalizedEvent) -> LedgerEntry:
        """
        Append one normalized event to a chain.

        Returns the committed entry, or the previously committed entry when
        the idempotency key has been seen on this chain before.

        Raises:
            ValidationError: event does not belong to chain_id, or its
                canonical payload does not match its fields
            ContentionError: retry budget exhausted
            StorageUnavailable: infrastructure fault
        """
        if event.chain_id != chain_id:
            raise ValidationError(
                f"Event belongs to chain {event.chain_id!r}, not {chain_id!r}"
            )
        self._check_payload(event)

        metrics = get_metrics()
        existing = self._lookup(chain_id, event.idempotency_key)
        if existing is not None:
            metrics.increment("idempotent_replays")
            logger.info(
                "Idempotent replay",
                chain_id=chain_id,
                sequence=existing.sequence,
                idempotency_key=event.idempotency_key,
            )
            return existing

        started = self._clock()
        deadline = started + self._config.append_deadline_seconds
        attempt = 0

        while True:
            attempt += 1
            try:
                with self._store.begin_append(chain_id) as ctx:
                    entry = self._build_entry(event, ctx.tip)
                    committed = ctx.commit(entry)

            except SequenceConflict:
                metrics.increment("contention_retries")
                now = self._clock()
                if attempt >= self._config.append_max_attempts or now >= deadline:
                    elapsed_ms = (now - started) * 1000
                    metrics.increment("contention_failures")
                    logger.warning(
                        "Append gave up on contended chain",
                        chain_id=chain_id,
                        attempts=attempt,
                        elapsed_ms=round(elapsed_ms, 2),
                    )
                    raise ContentionError(chain_id, attempt, elapsed_ms)

                delay = min(self._backoff_seconds(attempt), max(deadline - now, 0.0))
                logger.debug(
                    "Sequence conflict, retrying",
                    chain_id=chain_id,
                    attempt=attempt,
                    backoff_ms=round(delay * 1000, 2),
                )
                self._sleep(delay)
                continue

            except DuplicateIdempotencyKey:
                return self._resolve_duplicate(chain_id, event.idempotency_key)

            except StorageUnavailable as e:
                metrics.increment("storage_failures")
                logger.error(
                    "Append failed: storage unavailable",
                    chain_id=chain_id,
                    attempt=attempt,
                    error=str(e),
                )
                raise

            latency_ms = (self._clock() - started) * 1000
            self._cache.set((chain_id, committed.idempotency_key), committed)
            metrics.record_append(latency_ms)
            logger.info(
                "Entry appended",
                chain_id=chain_id,
                sequence=committed.sequence,
                event_type=committed.event_type,
                attempts=attempt,
            )
            return committed

    def _build_entry(self, event: NormalizedEvent, tip: "ChainTip") -> LedgerEntry:
        """Place the event at the tip: prev_hash and sequence come from the store."""
        if tip.tip_timestamp is not None and event.timestamp_utc < tip.tip_timestamp:
            # Record time never runs backwards along a chain
            event = self._restamp(event, tip.tip_timestamp)
        sequence = tip.next_sequence
        entry_hash = Hasher.hash_entry(event.canonical_payload, tip.tip_hash, sequence)
        return LedgerEntry(
            **event.record(),
            sequence=sequence,
            canonical_payload=event.canonical_payload,
            prev_hash=tip.tip_hash,
            entry_hash=entry_hash,
        )

    @staticmethod
    def _restamp(event: NormalizedEvent, timestamp_utc: datetime) -> NormalizedEvent:
        restamped = event.model_copy(update={"timestamp_utc": timestamp_utc})
        return restamped.model_copy(
            update={"canonical_payload": Hasher.canonicalize(restamped.record())}
        )

    @staticmethod
    def _check_payload(event: NormalizedEvent) -> None:
        try:
            expected = Hasher.canonicalize(event.record())
        except CanonicalSerializationError as e:
            raise ValidationError(f"Event cannot be canonicalized: {e}") from e
        if expected != event.canonical_payload:
            raise ValidationError("canonical_payload does not match the event fields")

    def _backoff_seconds(self, attempt: int) -> float:
        """Exponential backoff with jitter in [ceiling/2, ceiling]."""
        ceiling = min(
            self._config.append_backoff_ms * (2 ** (attempt - 1)),
            self._config.append_max_backoff_ms,
        )
        return (ceiling / 2 + random.random() * ceiling / 2) / 1000

    def _lookup(self, chain_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
        cached = self._cache.get((chain_id, idempotency_key))
        if cached is not None:
            return cached
        entry = self._store.find_by_idempotency_key(chain_id, idempotency_key)
        if entry is not None:
            self._cache.set((chain_id, idempotency_key), entry)
        return entry

    def _resolve_duplicate(self, chain_id: str, idempotency_key: str) -> LedgerEntry:
        existing = self._store.find_by_idempotency_key(chain_id, idempotency_key)
        if existing is None:
            # The unique index fired, so the row must be visible once committed
            raise StorageUnavailable(
                f"Idempotency key collided on chain {chain_id!r} but no entry is readable"
            )
        self._cache.set((chain_id, idempotency_key), existing)
        get_metrics().increment("idempotent_replays")
        logger.info(
            "Concurrent duplicate resolved to committed entry",
            chain_id=chain_id,
            sequence=existing.sequence,
        )
        return existing

    # ================================================================
    # READ PATH (snapshot reads, never block appends)
    # ================================================================

    def get_chain(self, chain_id: str) -> LedgerChain:
        """
        Raises:
            ChainNotFound: chain has no entries yet
        """
        chain = self._store.get_chain(chain_id)
        if chain is None:
            raise ChainNotFound(f"Chain {chain_id!r} has no entries")
        return chain

    def get_entry(self, chain_id: str, sequence: int) -> Optional[LedgerEntry]:
        return self._store.get_entry(chain_id, sequence)

    def list_entries(
        self,
        chain_id: str,
        from_sequence: int = 0,
        to_sequence: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[LedgerEntry]:
        return self._store.list_entries(chain_id, from_sequence, to_sequence, limit)
