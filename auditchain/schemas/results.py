"""
Result Schemas

What the ledger hands back: append receipts, verification results and
shallow integrity status. All are plain pydantic models so the API can
return them directly and bundles can embed them as JSON.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from .events import LedgerEntry


class DefectKind(str, Enum):
    """What exactly went wrong at one position of a chain."""
    HASH_MISMATCH = "hash_mismatch"          # stored entry_hash != recomputed
    LINK_MISMATCH = "link_mismatch"          # stored prev_hash != previous entry
    PAYLOAD_MISMATCH = "payload_mismatch"    # stored canonical_payload != record fields
    CHAIN_BROKEN = "chain_broken"            # follows an earlier broken entry
    SEQUENCE_ORDER = "sequence_order"        # duplicate or out-of-order sequence
    TIP_MISMATCH = "tip_mismatch"            # chain header disagrees with entries
    SEQUENCE_GAP = "sequence_gap"            # missing sequence number(s)


class DefectCategory(str, Enum):
    """
    Failure mode a defect points to.

    Gaps imply deletion; everything else implies in-place tampering.
    """
    INTEGRITY_VIOLATION = "integrity_violation"
    SEQUENCE_GAP = "sequence_gap"


class ChainDefect(BaseModel):
    """One defect found by the verifier."""
    kind: DefectKind
    category: DefectCategory
    sequence: Optional[int] = None
    message: str

    @classmethod
    def integrity(cls, kind: DefectKind, sequence: Optional[int], message: str) -> "ChainDefect":
        return cls(
            kind=kind,
            category=DefectCategory.INTEGRITY_VIOLATION,
            sequence=sequence,
            message=message,
        )

    @classmethod
    def gap(cls, first_missing: int, last_missing: int, message: Optional[str] = None) -> "ChainDefect":
        if message is None:
            if first_missing == last_missing:
                message = f"Sequence {first_missing} is missing"
            else:
                message = f"Sequences {first_missing}..{last_missing} are missing"
        return cls(
            kind=DefectKind.SEQUENCE_GAP,
            category=DefectCategory.SEQUENCE_GAP,
            sequence=first_missing,
            message=message,
        )


class VerificationResult(BaseModel):
    """Outcome of a deep (full or ranged) replay of a chain."""
    chain_id: str
    is_valid: bool
    total_entries: int = 0
    verified_entries: int = 0
    first_invalid_entry: Optional[int] = None
    errors: list[ChainDefect] = Field(default_factory=list)
    from_sequence: int = 0
    to_sequence: Optional[int] = None
    verified_at: Optional[datetime] = None

    @property
    def has_gaps(self) -> bool:
        return any(d.category == DefectCategory.SEQUENCE_GAP for d in self.errors)

    @property
    def has_integrity_violations(self) -> bool:
        return any(d.category == DefectCategory.INTEGRITY_VIOLATION for d in self.errors)

    def defects_at(self, sequence: int) -> list[ChainDefect]:
        return [d for d in self.errors if d.sequence == sequence]


class IntegrityStatus(BaseModel):
    """Outcome of the cheap tip-consistency check."""
    chain_id: str
    is_valid: bool
    chain_length: int
    genesis_hash: str
    latest_hash: str
    last_verified_at: datetime
    message: Optional[str] = None


class AppendReceipt(BaseModel):
    """What a caller gets back from a successful append."""
    entry_id: str
    sequence: int
    entry_hash: str

    @classmethod
    def from_entry(cls, entry: LedgerEntry) -> "AppendReceipt":
        return cls(
            entry_id=entry.entry_id,
            sequence=entry.sequence,
            entry_hash=entry.entry_hash,
        )
