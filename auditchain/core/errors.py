"""
Ledger Error Taxonomy

Every error that can leave the ledger carries a stable machine-readable
``code`` and a ``retryable`` flag. HTTP handlers and callers branch on
these, never on message text.

    ValidationError       validation           malformed event, rejected before append
    ContentionError       contention           append retry budget exhausted (retryable)
    StorageUnavailable    unavailable          infrastructure fault (retryable)
    IntegrityViolation    integrity_violation  hash/link/tip mismatch found by the verifier
    SequenceGapDetected   sequence_gap         missing sequence number (possible deletion)
    ExportFailed          export_failed        a read failed mid-export, no bundle produced
    ExportCancelled       export_cancelled     caller aborted the export
    ChainNotFound         not_found            chain has no entries yet

Verifier and exporter errors are observational: nothing here is ever
auto-corrected.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from ..schemas.results import VerificationResult


class LedgerError(Exception):
    """Base class for all ledger errors."""
    code = "ledger_error"
    retryable = False


class ValidationError(LedgerError):
    """Raised when an event is malformed (before any append attempt)."""
    code = "validation"


class ContentionError(LedgerError):
    """
    Raised when the optimistic append lost the race for the chain tip
    more often than the retry budget allows.

    The caller decides whether to retry further or abort the originating
    action.
    """
    code = "contention"
    retryable = True

    def __init__(self, chain_id: str, attempts: int, elapsed_ms: float):
        self.chain_id = chain_id
        self.attempts = attempts
        self.elapsed_ms = elapsed_ms
        super().__init__(
            f"Append to chain {chain_id!r} gave up after {attempts} attempts "
            f"({elapsed_ms:.0f}ms): chain tip is contended"
        )


class StorageUnavailable(LedgerError):
    """Raised on transient infrastructure faults (connection lost, timeouts)."""
    code = "unavailable"
    retryable = True


class IntegrityViolation(LedgerError):
    """
    Raised when verification finds a hash or linkage mismatch.

    Carries the full VerificationResult so operators see every defect,
    not only the first.
    """
    code = "integrity_violation"

    def __init__(self, message: str, result: Optional["VerificationResult"] = None):
        self.result = result
        super().__init__(message)


class SequenceGapDetected(IntegrityViolation):
    """Raised when verification finds a missing sequence number."""
    code = "sequence_gap"


class ExportFailed(LedgerError):
    """Raised when an export cannot complete. No partial bundle is returned."""
    code = "export_failed"


class ExportCancelled(LedgerError):
    """Raised when the caller aborts an export between pages."""
    code = "export_cancelled"


class ChainNotFound(LedgerError):
    """Raised when an operation needs a chain that has no entries yet."""
    code = "not_found"


# ============================================================
# Store-internal (resolved by the append engine, never surfaced)
# ============================================================

class LedgerStoreError(LedgerError):
    """Base exception for store-internal errors."""
    code = "store_error"


class SequenceConflict(LedgerStoreError):
    """Another writer already committed this (chain_id, sequence)."""
    code = "sequence_conflict"


class DuplicateIdempotencyKey(LedgerStoreError):
    """An entry with this (chain_id, idempotency_key) already exists."""
    code = "duplicate_idempotency_key"
