"""
PostgreSQL Ledger Store

Provides:
- Full ACID guarantees
- Optimistic concurrency via the UNIQUE (chain_id, sequence) constraint
  plus a compare-and-set on the chain header (no FOR UPDATE, no
  application locks)
- Durability (entries survive restarts)
- Multi-instance support (shared database)
- Statement/lock timeouts to prevent hanging

THREAD SAFETY:
All transaction state (conn, cursor) is stored in AppendContext, NOT on
the store. One store instance can be shared across threads.

Requirements:
- PostgreSQL 12+
- Tables created from schema.sql
- psycopg2

Usage:
    store = PostgresLedgerStore(lambda: psycopg2.connect(dsn))
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2.extras import Json

from ..core.errors import (
    DuplicateIdempotencyKey,
    LedgerStoreError,
    SequenceConflict,
    StorageUnavailable,
)
from ..core.hasher import GENESIS_HASH
from ..schemas import LedgerChain, LedgerEntry
from .store import AppendContext, ChainTip, LedgerStore


SCHEMA_PATH = Path(__file__).parent / "schema.sql"

# Constraint name from schema.sql; any other unique violation is a sequence race
IDEMPOTENCY_CONSTRAINT = "ledger_entries_chain_idempotency_key"

_ENTRY_COLUMNS = """
    entry_id, chain_id, sequence, event_type, resource_type, resource_id,
    actor_id, timestamp_utc, occurred_at, criticality, idempotency_key,
    metadata, metadata_hash, metadata_truncated, metadata_original_bytes,
    corrects_sequence, ip_address, user_agent, canonical_payload,
    prev_hash, entry_hash
"""

_CHAIN_COLUMNS = "chain_id, genesis_hash, tip_hash, length, created_at, updated_at"


class PostgresLedgerStore(LedgerStore):
    """PostgreSQL implementation of LedgerStore."""

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long an insert may wait on a competing row (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    # ------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------

    def _connect(self):
        try:
            return self._connection_factory()
        except psycopg2.OperationalError as e:
            raise StorageUnavailable(f"Could not connect to PostgreSQL: {e}") from e

    @contextmanager
    def _read_cursor(self) -> Generator[Any, None, None]:
        conn = self._connect()
        try:
            cursor = conn.cursor()
            try:
                yield cursor
            finally:
                cursor.close()
            conn.rollback()
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            # QueryCanceled (statement timeout) is an OperationalError too
            raise StorageUnavailable(f"Ledger read failed: {e}") from e
        finally:
            conn.close()

    def apply_schema(self) -> None:
        """Create tables, constraints, grants and the append-only trigger."""
        conn = self._connect()
        try:
            with conn.cursor() as cursor:
                cursor.execute(SCHEMA_PATH.read_text())
            conn.commit()
        finally:
            conn.close()

    def ping(self) -> None:
        with self._read_cursor() as cursor:
            cursor.execute("SELECT 1")

    # ------------------------------------------------------------
    # Append
    # ------------------------------------------------------------

    @contextmanager
    def begin_append(self, chain_id: str) -> Generator[AppendContext, None, None]:
        """
        Open a transaction and read the chain tip without locking it.

        The connection and transaction are scoped to this context manager,
        so the tip read and the insert always share one transaction.
        """
        conn = self._connect()
        ctx = None
        try:
            conn.autocommit = False
            cursor = conn.cursor()
            try:
                # SET LOCAL keeps timeouts transaction-scoped
                cursor.execute(f"SET LOCAL lock_timeout = '{int(self._lock_timeout_ms)}ms'")
                cursor.execute(f"SET LOCAL statement_timeout = '{int(self._statement_timeout_ms)}ms'")
                cursor.execute("SET LOCAL idle_in_transaction_session_timeout = '30s'")
                cursor.execute(
                    """
                    SELECT c.length, c.tip_hash, e.timestamp_utc
                    FROM ledger_chains c
                    LEFT JOIN ledger_entries e
                        ON e.chain_id = c.chain_id AND e.sequence = c.length - 1
                    WHERE c.chain_id = %s
                    """,
                    (chain_id,),
                )
                row = cursor.fetchone()
            except psycopg2.OperationalError as e:
                raise StorageUnavailable(f"Could not read tip of chain {chain_id!r}: {e}") from e

            if row is None:
                tip = ChainTip.empty(chain_id)
            else:
                tip = ChainTip(
                    chain_id=chain_id,
                    last_sequence=row[0] - 1,
                    tip_hash=row[1],
                    tip_timestamp=row[2],
                )

            ctx = AppendContext(tip=tip, _store=self, _conn=conn, _cursor=cursor)
            yield ctx

        finally:
            if ctx is not None and not ctx._committed and not ctx._rolled_back:
                self._do_rollback(ctx)
            try:
                if ctx is not None and ctx._cursor is not None:
                    ctx._cursor.close()
            finally:
                conn.close()

    def _do_commit(self, ctx: AppendContext, entry: LedgerEntry) -> LedgerEntry:
        """Insert the entry and advance the header, or raise a conflict."""
        conn, cursor = ctx._conn, ctx._cursor
        if conn is None or cursor is None:
            raise LedgerStoreError("_do_commit called outside begin_append context")

        now = datetime.now(timezone.utc)
        try:
            if entry.sequence == 0:
                # New chain: header row is created in this same transaction
                cursor.execute(
                    """
                    INSERT INTO ledger_chains (chain_id, genesis_hash, tip_hash, length, created_at, updated_at)
                    VALUES (%s, %s, %s, 0, %s, %s)
                    ON CONFLICT (chain_id) DO NOTHING
                    """,
                    (entry.chain_id, GENESIS_HASH, GENESIS_HASH, now, now),
                )

            cursor.execute(
                f"INSERT INTO ledger_entries ({_ENTRY_COLUMNS}) VALUES "
                "(%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)",
                (
                    entry.entry_id,
                    entry.chain_id,
                    entry.sequence,
                    entry.event_type,
                    entry.resource_type,
                    entry.resource_id,
                    entry.actor_id,
                    entry.timestamp_utc,
                    entry.occurred_at,
                    entry.criticality.value,
                    entry.idempotency_key,
                    Json(entry.metadata),
                    entry.metadata_hash,
                    entry.metadata_truncated,
                    entry.metadata_original_bytes,
                    entry.corrects_sequence,
                    entry.ip_address,
                    entry.user_agent,
                    entry.canonical_payload,
                    entry.prev_hash,
                    entry.entry_hash,
                ),
            )

            # Compare-and-set: only advances if nobody else moved the tip
            cursor.execute(
                """
                UPDATE ledger_chains
                SET tip_hash = %s, length = %s, updated_at = %s
                WHERE chain_id = %s AND length = %s AND tip_hash = %s
                """,
                (
                    entry.entry_hash,
                    entry.sequence + 1,
                    now,
                    entry.chain_id,
                    entry.sequence,
                    entry.prev_hash,
                ),
            )
            if cursor.rowcount != 1:
                conn.rollback()
                ctx._rolled_back = True
                raise SequenceConflict(
                    f"Chain {entry.chain_id!r} moved before sequence {entry.sequence} committed"
                )

            conn.commit()

        except pg_errors.UniqueViolation as e:
            conn.rollback()
            ctx._rolled_back = True
            constraint = getattr(e.diag, "constraint_name", None)
            if constraint == IDEMPOTENCY_CONSTRAINT:
                raise DuplicateIdempotencyKey(
                    f"Idempotency key already used on chain {entry.chain_id!r}"
                ) from e
            raise SequenceConflict(
                f"Sequence {entry.sequence} already committed on chain {entry.chain_id!r}"
            ) from e
        except pg_errors.LockNotAvailable as e:
            self._do_rollback(ctx)
            raise SequenceConflict(f"Chain {entry.chain_id!r} busy: {e}") from e
        except pg_errors.QueryCanceled as e:
            self._do_rollback(ctx)
            if "lock timeout" in str(e).lower():
                raise SequenceConflict(f"Chain {entry.chain_id!r} busy: {e}") from e
            raise StorageUnavailable(f"Append timed out: {e}") from e
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
            self._do_rollback(ctx)
            raise StorageUnavailable(f"Append failed: {e}") from e

        return entry

    def _do_rollback(self, ctx: AppendContext) -> None:
        if ctx._conn is not None and not ctx._rolled_back:
            try:
                ctx._conn.rollback()
            except (psycopg2.OperationalError, psycopg2.InterfaceError):
                pass  # Connection already gone; the server aborts the transaction
            ctx._rolled_back = True

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------

    def get_chain(self, chain_id: str) -> Optional[LedgerChain]:
        with self._read_cursor() as cursor:
            cursor.execute(
                f"SELECT {_CHAIN_COLUMNS} FROM ledger_chains WHERE chain_id = %s",
                (chain_id,),
            )
            row = cursor.fetchone()
        return self._row_to_chain(row) if row else None

    def list_chains(self) -> list[LedgerChain]:
        with self._read_cursor() as cursor:
            cursor.execute(f"SELECT {_CHAIN_COLUMNS} FROM ledger_chains ORDER BY chain_id")
            rows = cursor.fetchall()
        return [self._row_to_chain(row) for row in rows]

    def get_entry(self, chain_id: str, sequence: int) -> Optional[LedgerEntry]:
        with self._read_cursor() as cursor:
            cursor.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM ledger_entries WHERE chain_id = %s AND sequence = %s",
                (chain_id, sequence),
            )
            row = cursor.fetchone()
        return self._row_to_entry(row) if row else None

    def find_by_idempotency_key(self, chain_id: str, idempotency_key: str) -> Optional[LedgerEntry]:
        with self._read_cursor() as cursor:
            cursor.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM ledger_entries "
                "WHERE chain_id = %s AND idempotency_key = %s",
                (chain_id, idempotency_key),
            )
            row = cursor.fetchone()
        return self._row_to_entry(row) if row else None

    def list_entries(
        self,
        chain_id: str,
        from_sequence: int = 0,
        to_sequence: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> list[LedgerEntry]:
        query = f"SELECT {_ENTRY_COLUMNS} FROM ledger_entries WHERE chain_id = %s AND sequence >= %s"
        params: list[Any] = [chain_id, from_sequence]
        if to_sequence is not None:
            query += " AND sequence <= %s"
            params.append(to_sequence)
        query += " ORDER BY sequence"
        if limit is not None:
            query += " LIMIT %s"
            params.append(limit)

        with self._read_cursor() as cursor:
            cursor.execute(query, params)
            rows = cursor.fetchall()
        return [self._row_to_entry(row) for row in rows]

    def count_entries(self, chain_id: str) -> int:
        with self._read_cursor() as cursor:
            cursor.execute("SELECT COUNT(*) FROM ledger_entries WHERE chain_id = %s", (chain_id,))
            return cursor.fetchone()[0]

    def find_sequence_window(
        self,
        chain_id: str,
        from_time: datetime,
        to_time: datetime,
    ) -> Optional[tuple[int, int]]:
        with self._read_cursor() as cursor:
            cursor.execute(
                """
                SELECT MIN(sequence), MAX(sequence) FROM ledger_entries
                WHERE chain_id = %s AND timestamp_utc >= %s AND timestamp_utc <= %s
                """,
                (chain_id, from_time, to_time),
            )
            row = cursor.fetchone()
        if row is None or row[0] is None:
            return None
        return row[0], row[1]

    # ------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------

    @staticmethod
    def _row_to_chain(row: tuple) -> LedgerChain:
        return LedgerChain(
            chain_id=row[0],
            genesis_hash=row[1],
            tip_hash=row[2],
            length=row[3],
            created_at=row[4],
            updated_at=row[5],
        )

    @staticmethod
    def _row_to_entry(row: tuple) -> LedgerEntry:
        """Convert a database row to a LedgerEntry."""
        return LedgerEntry(
            entry_id=row[0],
            chain_id=row[1],
            sequence=row[2],
            event_type=row[3],
            resource_type=row[4],
            resource_id=row[5],
            actor_id=row[6],
            timestamp_utc=row[7],
            occurred_at=row[8],
            criticality=row[9],
            idempotency_key=row[10],
            metadata=row[11] or {},
            metadata_hash=row[12],
            metadata_truncated=row[13],
            metadata_original_bytes=row[14],
            corrects_sequence=row[15],
            ip_address=row[16],
            user_agent=row[17],
            canonical_payload=row[18],
            prev_hash=row[19],
            entry_hash=row[20],
        )
