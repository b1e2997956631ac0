# Canonical Schemas for the Audit Ledger
# Input events, stored entries, and what verification reports back.

from .events import (
    AuditEvent,
    Criticality,
    EntryRecord,
    EventType,
    HIGH_ASSURANCE_EVENTS,
    LedgerChain,
    LedgerEntry,
    NormalizedEvent,
)
from .results import (
    AppendReceipt,
    ChainDefect,
    DefectCategory,
    DefectKind,
    IntegrityStatus,
    VerificationResult,
)

__all__ = [
    "AuditEvent",
    "Criticality",
    "EntryRecord",
    "EventType",
    "HIGH_ASSURANCE_EVENTS",
    "LedgerChain",
    "LedgerEntry",
    "NormalizedEvent",
    "AppendReceipt",
    "ChainDefect",
    "DefectCategory",
    "DefectKind",
    "IntegrityStatus",
    "VerificationResult",
]
