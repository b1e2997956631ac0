"""
Canonical Audit Event Schema

This is an append-only ledger, not CRUD.
Nothing is "edited". Things happen.

Each entry:
- Produces a new immutable record
- Is hashed
- Is chained to the entry before it in the same tenant chain

A correction is itself a new entry whose ``corrects_sequence`` points at
the entry it corrects.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Identifiers that end up inside canonical payloads stay ASCII-safe
CHAIN_ID_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$"
EVENT_TYPE_PATTERN = r"^[A-Z][A-Z0-9_]{0,63}$"


class Criticality(str, Enum):
    """
    Assurance level of an event.

    Both levels use the same append contract. The difference is only in
    what the calling action does when the append cannot be committed.
    """
    HIGH_ASSURANCE = "high_assurance"  # fail the calling action
    BEST_EFFORT = "best_effort"        # log, count, and let the action proceed


class EventType(str, Enum):
    """
    Known event types.
    You can add more later, never remove.

    Unlisted upper-case types are accepted as well; this enum only drives
    the default criticality policy and documentation.
    """
    # Fund lifecycle
    FUND_CREATED = "FUND_CREATED"
    FUND_SETTINGS_UPDATE = "FUND_SETTINGS_UPDATE"
    FUND_THRESHOLD_UPDATE = "FUND_THRESHOLD_UPDATE"

    # Investor onboarding
    INVESTOR_CREATED = "INVESTOR_CREATED"
    INVESTOR_UPDATED = "INVESTOR_UPDATED"
    INVESTOR_REVIEWED = "INVESTOR_REVIEWED"
    INVESTOR_APPROVED = "INVESTOR_APPROVED"
    INVESTOR_REJECTED = "INVESTOR_REJECTED"
    NDA_SIGNED = "NDA_SIGNED"
    KYC_INITIATED = "KYC_INITIATED"
    KYC_COMPLETED = "KYC_COMPLETED"
    KYC_FAILED = "KYC_FAILED"
    AML_SCREENING = "AML_SCREENING"

    # Regulatory certifications
    ACCREDITATION_SUBMITTED = "ACCREDITATION_SUBMITTED"
    ACCREDITATION_APPROVED = "ACCREDITATION_APPROVED"
    ACCREDITATION_REJECTED = "ACCREDITATION_REJECTED"
    ACCREDITATION_AUTO_APPROVED = "ACCREDITATION_AUTO_APPROVED"
    BAD_ACTOR_CERTIFIED = "BAD_ACTOR_CERTIFIED"

    # Documents and signatures
    DOCUMENT_VIEWED = "DOCUMENT_VIEWED"
    DOCUMENT_DOWNLOADED = "DOCUMENT_DOWNLOADED"
    DOCUMENT_APPROVED = "DOCUMENT_APPROVED"
    DOCUMENT_SIGNED = "DOCUMENT_SIGNED"
    DOCUMENT_COMPLETED = "DOCUMENT_COMPLETED"
    DOCUMENT_DECLINED = "DOCUMENT_DECLINED"
    SUBSCRIPTION_CREATED = "SUBSCRIPTION_CREATED"
    SUBSCRIPTION_SIGNED = "SUBSCRIPTION_SIGNED"

    # Money movement
    SUBSCRIPTION_PAYMENT_COMPLETED = "SUBSCRIPTION_PAYMENT_COMPLETED"
    CAPITAL_CALL_CREATED = "CAPITAL_CALL_CREATED"
    CAPITAL_CALL_PAID = "CAPITAL_CALL_PAID"
    DISTRIBUTION_CREATED = "DISTRIBUTION_CREATED"
    DISTRIBUTION_COMPLETED = "DISTRIBUTION_COMPLETED"

    # Access and administration
    USER_LOGIN = "USER_LOGIN"
    USER_LOGOUT = "USER_LOGOUT"
    ADMIN_ACTION = "ADMIN_ACTION"
    SETTINGS_UPDATED = "SETTINGS_UPDATED"
    AUDIT_LOG_EXPORT = "AUDIT_LOG_EXPORT"
    AUDIT_LOG_VERIFIED = "AUDIT_LOG_VERIFIED"

    # Ledger-level
    ENTRY_CORRECTED = "ENTRY_CORRECTED"


# Events whose append failure must fail the calling action
HIGH_ASSURANCE_EVENTS = frozenset({
    EventType.BAD_ACTOR_CERTIFIED,
    EventType.ACCREDITATION_SUBMITTED,
    EventType.ACCREDITATION_APPROVED,
    EventType.ACCREDITATION_REJECTED,
    EventType.ACCREDITATION_AUTO_APPROVED,
    EventType.NDA_SIGNED,
    EventType.DOCUMENT_SIGNED,
    EventType.DOCUMENT_COMPLETED,
    EventType.SUBSCRIPTION_SIGNED,
    EventType.SUBSCRIPTION_PAYMENT_COMPLETED,
    EventType.INVESTOR_APPROVED,
    EventType.INVESTOR_REJECTED,
    EventType.KYC_COMPLETED,
    EventType.AML_SCREENING,
    EventType.CAPITAL_CALL_PAID,
    EventType.DISTRIBUTION_COMPLETED,
    EventType.ENTRY_CORRECTED,
})


def _enum_to_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


def _require_aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        raise ValueError("datetime must be timezone-aware")
    return value


# ============================================================
# Input
# ============================================================

class AuditEvent(BaseModel):
    """
    A domain event as handed to the ledger by the originating action.

    ``metadata`` is free-form; the normalizer turns it into the bounded,
    canonical copy that is stored.
    """
    chain_id: str = Field(..., pattern=CHAIN_ID_PATTERN, description="Tenant/team scope")
    event_type: str = Field(..., pattern=EVENT_TYPE_PATTERN)
    resource_type: str = Field(..., min_length=1, max_length=64)
    resource_id: str = Field(..., min_length=1, max_length=256)
    actor_id: str = Field(..., min_length=1, max_length=256)
    metadata: dict[str, Any] = Field(default_factory=dict)
    criticality: Optional[Criticality] = Field(
        None, description="Defaults from the event type when omitted"
    )
    occurred_at: Optional[datetime] = Field(
        None, description="When the domain action happened (timezone-aware)"
    )
    idempotency_key: Optional[str] = Field(None, min_length=1, max_length=256)
    source_event_id: Optional[str] = Field(None, min_length=1, max_length=256)
    corrects_sequence: Optional[int] = Field(None, ge=0)
    ip_address: Optional[str] = Field(None, max_length=64)
    user_agent: Optional[str] = Field(None, max_length=512)

    @field_validator("event_type", "resource_type", "resource_id", "actor_id", mode="before")
    @classmethod
    def _plain_strings(cls, v: Any) -> Any:
        return _enum_to_value(v)

    @field_validator("occurred_at")
    @classmethod
    def _occurred_at_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _require_aware(v)


# ============================================================
# Stored record
# ============================================================

class EntryRecord(BaseModel):
    """
    The fields covered by an entry's canonical payload.

    Everything here is hashed. Chain position (sequence, prev_hash) is
    bound separately by the entry hash.
    """
    model_config = ConfigDict(frozen=True)

    entry_id: str
    chain_id: str
    event_type: str
    resource_type: str
    resource_id: str
    actor_id: str
    timestamp_utc: datetime
    occurred_at: Optional[datetime] = None
    criticality: Criticality
    idempotency_key: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    metadata_hash: str
    metadata_truncated: bool = False
    metadata_original_bytes: int = 0
    corrects_sequence: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @field_validator("timestamp_utc", "occurred_at")
    @classmethod
    def _aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _require_aware(v)

    def record(self) -> dict[str, Any]:
        """The hashed fields only, as a plain dict."""
        return {name: getattr(self, name) for name in EntryRecord.model_fields}


class NormalizedEvent(EntryRecord):
    """An event in canonical form, ready to be placed on a chain."""
    canonical_payload: str


class LedgerEntry(EntryRecord):
    """
    One immutable record in a chain.

    A LedgerEntry has exactly one state, CREATED, and it is terminal.
    """
    sequence: int = Field(..., ge=0)
    canonical_payload: str
    prev_hash: str
    entry_hash: str


class LedgerChain(BaseModel):
    """Per-tenant chain header. Advanced only by successful appends."""
    chain_id: str
    genesis_hash: str
    tip_hash: str
    length: int = Field(0, ge=0)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def last_sequence(self) -> int:
        return self.length - 1
