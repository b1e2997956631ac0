"""
Event Normalizer

Turns heterogeneous domain events into one canonical record shape.

RULES:
1. Structure is validated first (AuditEvent). Anything malformed raises
   ValidationError before an append is ever attempted.
2. Every number in metadata (int, float, Decimal; not bool) becomes a
   string. NaN and Infinity are rejected. Money never travels as a float.
3. Datetimes in metadata must be timezone-aware; they become canonical
   UTC strings.
4. metadata_hash is the hash of the FULL canonical metadata, computed
   before any truncation.
5. If the canonical metadata is larger than metadata_max_bytes, a bounded
   copy is stored: top-level keys are taken in sorted order while they
   fit, a string that does not fit is clipped with TRUNCATION_MARKER, and
   anything else that does not fit is dropped.
6. Criticality defaults from the event type (HIGH_ASSURANCE_EVENTS) unless
   the caller sets it.
7. The idempotency key is, in order of preference: the caller's key, a
   hash of (chain, event type, source event id), a hash of the content
   plus occurred_at, or a random key (no dedup across retries).
"""

import json
import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Optional

import pydantic

from ..observability import get_logger
from ..schemas import (
    AuditEvent,
    Criticality,
    HIGH_ASSURANCE_EVENTS,
    NormalizedEvent,
)
from .config import LedgerConfig
from .errors import ValidationError
from .hasher import CanonicalSerializationError, Hasher

logger = get_logger(__name__)

TRUNCATION_MARKER = "...[truncated]"

_HIGH_ASSURANCE_TYPES = frozenset(t.value for t in HIGH_ASSURANCE_EVENTS)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _json_size(value: Any) -> int:
    """Byte size of a value in canonical JSON form (ASCII, so len == bytes)."""
    return len(json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True))


class EventNormalizer:
    """
    Converts AuditEvents into NormalizedEvents.

    Stateless apart from configuration; safe to share between threads.
    """

    def __init__(
        self,
        config: Optional[LedgerConfig] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._config = config or LedgerConfig.from_env()
        self._clock = clock

    @property
    def config(self) -> LedgerConfig:
        return self._config

    def normalize(self, event: AuditEvent | dict[str, Any]) -> NormalizedEvent:
        """
        Validate and canonicalize one event.

        Raises:
            ValidationError: If the event is malformed
        """
        if not isinstance(event, AuditEvent):
            try:
                event = AuditEvent.model_validate(event)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Malformed audit event: {e}") from e

        full_metadata = self._canonical_metadata(event.metadata)
        metadata_hash = Hasher.hash_data(full_metadata)
        original_bytes = _json_size(full_metadata)
        stored_metadata, truncated = self._bound_metadata(full_metadata, original_bytes)

        if truncated:
            logger.info(
                "Metadata truncated",
                chain_id=event.chain_id,
                event_type=event.event_type,
                original_bytes=original_bytes,
                limit_bytes=self._config.metadata_max_bytes,
            )

        record = dict(
            entry_id=str(uuid.uuid4()),
            chain_id=event.chain_id,
            event_type=event.event_type,
            resource_type=event.resource_type,
            resource_id=event.resource_id,
            actor_id=event.actor_id,
            timestamp_utc=self._clock(),
            occurred_at=event.occurred_at,
            criticality=event.criticality or self.default_criticality(event.event_type),
            idempotency_key=self.derive_idempotency_key(event, metadata_hash),
            metadata=stored_metadata,
            metadata_hash=metadata_hash,
            metadata_truncated=truncated,
            metadata_original_bytes=original_bytes,
            corrects_sequence=event.corrects_sequence,
            ip_address=event.ip_address,
            user_agent=event.user_agent,
        )

        try:
            normalized = NormalizedEvent(canonical_payload="", **record)
            canonical_payload = Hasher.canonicalize(normalized.record())
        except (pydantic.ValidationError, CanonicalSerializationError) as e:
            raise ValidationError(f"Event cannot be canonicalized: {e}") from e

        return normalized.model_copy(update={"canonical_payload": canonical_payload})

    # ------------------------------------------------------------
    # Criticality and idempotency
    # ------------------------------------------------------------

    @staticmethod
    def default_criticality(event_type: str) -> Criticality:
        if event_type in _HIGH_ASSURANCE_TYPES:
            return Criticality.HIGH_ASSURANCE
        return Criticality.BEST_EFFORT

    @staticmethod
    def derive_idempotency_key(event: AuditEvent, metadata_hash: str) -> str:
        """Stable key for caller retries of the same domain event."""
        if event.idempotency_key:
            return event.idempotency_key

        if event.source_event_id:
            digest = Hasher.hash_data({
                "chain_id": event.chain_id,
                "event_type": event.event_type,
                "source_event_id": event.source_event_id,
            })
            return f"src:{digest}"

        if event.occurred_at is not None:
            digest = Hasher.hash_data({
                "chain_id": event.chain_id,
                "event_type": event.event_type,
                "resource_type": event.resource_type,
                "resource_id": event.resource_id,
                "actor_id": event.actor_id,
                "metadata_hash": metadata_hash,
                "occurred_at": event.occurred_at,
            })
            return f"content:{digest}"

        logger.debug(
            "No idempotency source on event; retries will not be deduplicated",
            chain_id=event.chain_id,
            event_type=event.event_type,
        )
        return f"rand:{uuid.uuid4().hex}"

    # ------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------

    def _canonical_metadata(self, metadata: dict[str, Any]) -> dict[str, Any]:
        """Stringify numbers, then reduce to canonical JSON-native form."""
        try:
            return Hasher.canonical_dict(self._stringify_numbers(metadata, "metadata"), "metadata")
        except CanonicalSerializationError as e:
            raise ValidationError(str(e)) from e

    def _stringify_numbers(self, value: Any, path: str) -> Any:
        if isinstance(value, bool) or value is None:
            return value
        if isinstance(value, int):
            return str(value)
        if isinstance(value, float):
            if not math.isfinite(value):
                raise ValidationError(f"Non-finite number at {path}")
            # repr() is the shortest round-tripping form, identical on every platform
            return repr(value)
        if isinstance(value, Decimal):
            if not value.is_finite():
                raise ValidationError(f"Non-finite number at {path}")
            return str(value)
        if isinstance(value, dict):
            return {k: self._stringify_numbers(v, f"{path}.{k}") for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._stringify_numbers(v, f"{path}[{i}]") for i, v in enumerate(value)]
        return value

    def _bound_metadata(self, metadata: dict[str, Any], size: int) -> tuple[dict[str, Any], bool]:
        limit = self._config.metadata_max_bytes
        if size <= limit:
            return metadata, False

        bounded: dict[str, Any] = {}
        for key in sorted(metadata):
            candidate = {**bounded, key: metadata[key]}
            if _json_size(candidate) <= limit:
                bounded = candidate
                continue

            value = metadata[key]
            if isinstance(value, str):
                clipped = self._clip_string(bounded, key, value, limit)
                if clipped is not None:
                    bounded = {**bounded, key: clipped}

        return bounded, True

    @staticmethod
    def _clip_string(bounded: dict[str, Any], key: str, value: str, limit: int) -> Optional[str]:
        """Longest prefix of value that still fits, plus the marker."""
        room = limit - _json_size({**bounded, key: TRUNCATION_MARKER})
        if room <= 0:
            return None

        used = 0
        end = 0
        for ch in value:
            # Escaped width of this character inside a JSON string
            width = len(json.dumps(ch, ensure_ascii=True)) - 2
            if used + width > room:
                break
            used += width
            end += 1
        return value[:end] + TRUNCATION_MARKER
