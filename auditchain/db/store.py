"""
Ledger Store Abstraction

This module defines the LedgerStore interface and the in-memory
implementation. The PostgreSQL implementation lives in postgres.py.

The LedgerStore is responsible for:
- Durable, insert-only storage of entries keyed by (chain_id, sequence)
- Per-chain headers (genesis, tip, length)
- Enforcing the concurrency guard: at most one entry per (chain_id, sequence)
  and per (chain_id, idempotency_key)

The append engine retains responsibility for:
- Canonical hashing and chain linkage
- Retry, backoff and deadlines
- Idempotent replays

No update or delete operation exists on this interface.

TRANSACTION CONTRACT:
All writes go through the begin_append() context manager:

    with store.begin_append(chain_id) as ctx:
        seq, prev_hash = ctx.tip.next_sequence, ctx.tip.tip_hash
        # ... build and hash the entry ...
        ctx.commit(entry)

Reading the tip does NOT lock it. Two writers may read the same tip; the
second commit fails with SequenceConflict and the engine retries.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Generator, Optional

from ..core.errors import DuplicateIdempotencyKey, LedgerStoreError, SequenceConflict
from ..core.hasher import GENESIS_HASH
from ..schemas import LedgerChain, LedgerEntry


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class ChainTip:
    """Snapshot of a chain's tip as read at the start of an append."""
    chain_id: str
    last_sequence: int  # -1 means empty chain
    tip_hash: str       # GENESIS_HASH for an empty chain
    tip_timestamp: Optional[datetime] = None  # record time of the tip entry

    @property
    def next_sequence(self) -> int:
        return self.last_sequence + 1

    @property
    def is_empty(self) -> bool:
        return self.last_sequence == -1

    @classmethod
    def empty(cls, chain_id: str) -> "ChainTip":
        return cls(chain_id=chain_id, last_sequence=-1, tip_hash=GENESIS_HASH)

    @classmethod
    def from_chain(cls, chain: LedgerChain, tip_entry: Optional[LedgerEntry] = None) -> "ChainTip":
        return cls(
            chain_id=chain.chain_id,
            last_sequence=chain.length - 1,
            tip_hash=chain.tip_hash,
            tip_timestamp=tip_entry.timestamp_utc if tip_entry is not None else None,
        )


@dataclass
class AppendContext:
    """
    Transaction context for one append attempt.

    Holds the tip snapshot and the connection the commit must use.

    THREAD SAFETY: All transaction state (conn, cursor) is stored HERE,
    not on the store, so one store instance can serve many threads.
    """
    tip: ChainTip
    _store: "LedgerStore"
    _conn: Any = field(default=None)
    _cursor: Any = field(default=None)
    _committed: bool = field(default=False, init=False)
    _rolled_back: bool = field(default=False, init=False)

    def commit(self, entry: LedgerEntry) -> LedgerEntry:
        """
        Persist the entry within this transaction context.

        Raises:
            SequenceConflict: another writer won the race for this sequence
            DuplicateIdempotencyKey: the idempotency key is already on the chain
            StorageUnavailable: infrastructure fault
        """
        if self._committed:
            raise LedgerStoreError("Transaction already committed")
        if self._rolled_back:
            raise LedgerStoreError("Transaction already rolled back")
        if entry.chain_id != self.tip.chain_id:
            raise LedgerStoreError(
                f"Entry for chain {entry.chain_id!r} committed in a "
                f"{self.tip.chain_id!r} transaction"
            )

        result = self._store._do_commit(self, entry)
        self._committed = True
        return result

    def rollback(self) -> None:
        """Explicitly rollback this transaction."""
        if not self._committed and not self._rolled_back:
            self._store._do_rollback(self)
            self._rolled_back = True


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class LedgerStore(ABC):
    """
    Abstract base class for ledger storage.

    Implementations must ensure:
    1. A commit only succeeds if (chain_id, sequence) is free AND the
       sequence is exactly the chain's current length
    2. (chain_id, idempotency_key) is unique
    3. The chain header (tip_hash, length) advances in the same
       transaction as the insert; the header row of a new chain is
       created in that transaction too
    4. Reads never block appends
    """

    @contextmanager
    @abstractmethod
    def begin_append(self, chain_id: str) -> Generator[AppendContext, None, None]:
        """
        Begin one optimistic append attempt on a chain.

        Yields an AppendContext with the tip snapshot; rolls back if the
        block exits without committing.
        """
        pass

    @abstractmethod
    def _do_commit(self, ctx: AppendContext, entry: LedgerEntry) -> LedgerEntry:
        """Internal: commit within current transaction. Use ctx.commit() instead."""
        pass

    @abstractmethod
    def _do_rollback(self, ctx: AppendContext) -> None:
        """Internal: rollback current transaction. Use ctx.rollback() instead."""
        pass

    @abstractmethod
    def get_chain(self, chain_id: str) -> Optional[LedgerChain]:
        """Get the chain header, or None if the chain has no entries yet."""
        pass

    @abstractmethod
    def list_chains(self) -> list[LedgerChain]:
        pass

    @abstractmethod
    def get_entry(self, chain_id: str, sequence: int) -> Optional[LedgerEntry]:
        pass

    @abstractmethod
    def find_by_idempotency_key(self, chain_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
        pass

    @abstractmethod
    def list_entries(
        self,
        chain_id: str,
        from_sequence: int = 0,
        to_sequence: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[LedgerEntry]:
        """
        List entries with from_sequence <= sequence <= to_sequence,
        ordered by sequence ascending.
        """
        pass

    @abstractmethod
    def count_entries(self, chain_id: str) -> int:
        pass

    @abstractmethod
    def find_sequence_window(
        self,
        chain_id: str,
        from_time: datetime,
        to_time: datetime,
    ) -> Optional[tuple[int, int]]:
        """
        Smallest and largest sequence among entries whose timestamp_utc
        lies within [from_time, to_time], or None if there are none.
        """
        pass

    def get_tip(self, chain_id: str) -> ChainTip:
        """Current tip without starting a transaction."""
        chain = self.get_chain(chain_id)
        return ChainTip.from_chain(chain) if chain else ChainTip.empty(chain_id)

    def ping(self) -> None:
        """Raise if the backing storage is unreachable."""
        return None

    def close(self) -> None:
        return None


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

class InMemoryLedgerStore(LedgerStore):
    """
    In-memory implementation of LedgerStore.

    Suitable for:
    - Development
    - Testing

    NOT suitable for:
    - Production (no durability)
    - Multi-instance deployments (no shared state)

    The internal latch stands in for the database's unique index: it is
    held only for the check-and-insert inside _do_commit and for snapshot
    copies on reads, never across an append attempt.
    """

    def __init__(self):
        self._chains: dict[str, LedgerChain] = {}
        self._entries: dict[str, dict[int, LedgerEntry]] = {}
        self._idempotency: dict[tuple[str, str], int] = {}
        self._latch = Lock()

    @contextmanager
    def begin_append(self, chain_id: str) -> Generator[AppendContext, None, None]:
        """Snapshot the tip; the commit re-checks it under the latch."""
        with self._latch:
            chain = self._chains.get(chain_id)
            if chain is None:
                tip = ChainTip.empty(chain_id)
            else:
                tip_entry = self._entries.get(chain_id, {}).get(chain.length - 1)
                tip = ChainTip.from_chain(chain, tip_entry)

        ctx = AppendContext(tip=tip, _store=self, _conn="in_memory")
        try:
            yield ctx
        finally:
            if not ctx._committed and not ctx._rolled_back:
                self._do_rollback(ctx)

    def _do_commit(self, ctx: AppendContext, entry: LedgerEntry) -> LedgerEntry:
        if ctx._conn != "in_memory":
            raise LedgerStoreError("_do_commit called outside begin_append context")

        chain_id = entry.chain_id
        with self._latch:
            entries = self._entries.setdefault(chain_id, {})

            if (chain_id, entry.idempotency_key) in self._idempotency:
                raise DuplicateIdempotencyKey(
                    f"Idempotency key already used on chain {chain_id!r}"
                )
            if entry.sequence in entries:
                raise SequenceConflict(
                    f"Sequence {entry.sequence} already committed on chain {chain_id!r}"
                )

            chain = self._chains.get(chain_id)
            length = chain.length if chain else 0
            # Compare-and-set on the header: the tip this entry links to
            # must still be the tip
            if entry.sequence != length:
                raise SequenceConflict(
                    f"Chain {chain_id!r} moved: length is {length}, "
                    f"entry claims sequence {entry.sequence}"
                )

            now = datetime.now(timezone.utc)
            entries[entry.sequence] = entry
            self._idempotency[(chain_id, entry.idempotency_key)] = entry.sequence
            self._chains[chain_id] = LedgerChain(
                chain_id=chain_id,
                genesis_hash=chain.genesis_hash if chain else GENESIS_HASH,
                tip_hash=entry.entry_hash,
                length=entry.sequence + 1,
                created_at=chain.created_at if chain else now,
                updated_at=now,
            )
        ctx._conn = None
        return entry

    def _do_rollback(self, ctx: AppendContext) -> None:
        ctx._conn = None

    def get_chain(self, chain_id: str) -> Optional[LedgerChain]:
        with self._latch:
            return self._chains.get(chain_id)

    def list_chains(self) -> list[LedgerChain]:
        with self._latch:
            return [self._chains[k] for k in sorted(self._chains)]

    def get_entry(self, chain_id: str, sequence: int) -> Optional[LedgerEntry]:
        with self._latch:
            return self._entries.get(chain_id, {}).get(sequence)

    def find_by_idempotency_key(self, chain_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
        with self._latch:
            sequence = self._idempotency.get((chain_id, idempotency_key))
            if sequence is None:
                return None
            return self._entries.get(chain_id, {}).get(sequence)

    def list_entries(
        self,
        chain_id: str,
        from_sequence: int = 0,
        to_sequence: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[LedgerEntry]:
        with self._latch:
            snapshot = list(self._entries.get(chain_id, {}).items())

        result = [
            entry for seq, entry in sorted(snapshot, key=lambda item: item[0])
            if seq >= from_sequence and (to_sequence is None or seq <= to_sequence)
        ]
        return result[:limit] if limit is not None else result

    def count_entries(self, chain_id: str) -> int:
        with self._latch:
            return len(self._entries.get(chain_id, {}))

    def find_sequence_window(
        self,
        chain_id: str,
        from_time: datetime,
        to_time: datetime,
    ) -> Optional[tuple[int, int]]:
        with self._latch:
            snapshot = list(self._entries.get(chain_id, {}).values())

        matching = [e.sequence for e in snapshot if from_time <= e.timestamp_utc <= to_time]
        if not matching:
            return None
        return min(matching), max(matching)

    def clear(self) -> None:
        """Clear everything (for testing only)."""
        with self._latch:
            self._chains.clear()
            self._entries.clear()
            self._idempotency.clear()
