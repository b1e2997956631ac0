"""
Tests for event normalization.

Heterogeneous domain events in, one canonical record shape out.
"""

import json
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from auditchain.core import (
    EventNormalizer,
    Hasher,
    LedgerConfig,
    TRUNCATION_MARKER,
    ValidationError,
)
from auditchain.schemas import AuditEvent, Criticality, EventType

from conftest import BASE_TIME


class TestValidation:
    """Malformed events never reach the append engine."""

    def test_missing_field(self, normalizer, make_event):
        event = make_event()
        del event["actor_id"]
        with pytest.raises(ValidationError, match="Malformed"):
            normalizer.normalize(event)

    def test_bad_event_type(self, normalizer, make_event):
        with pytest.raises(ValidationError):
            normalizer.normalize(make_event(event_type="document viewed"))

    def test_bad_chain_id(self, normalizer, make_event):
        with pytest.raises(ValidationError):
            normalizer.normalize(make_event(chain_id="team 42"))

    def test_naive_occurred_at(self, normalizer, make_event):
        with pytest.raises(ValidationError):
            normalizer.normalize(make_event(occurred_at=datetime(2026, 1, 1, 12, 0)))

    def test_non_finite_number(self, normalizer, make_event):
        with pytest.raises(ValidationError, match="Non-finite"):
            normalizer.normalize(make_event(metadata={"amount": float("nan")}))

    def test_naive_datetime_in_metadata(self, normalizer, make_event):
        with pytest.raises(ValidationError):
            normalizer.normalize(make_event(metadata={"at": datetime(2026, 1, 1)}))

    def test_accepts_model(self, normalizer, make_event):
        normalized = normalizer.normalize(AuditEvent(**make_event()))
        assert normalized.chain_id == "team_42"


class TestCanonicalShape:
    """Numbers become strings; the payload is the canonical record."""

    def test_numbers_stringified(self, normalizer, make_event):
        normalized = normalizer.normalize(make_event(metadata={
            "amount": 1500,
            "rate": 0.25,
            "fee": Decimal("12.50"),
            "approved": True,
            "nested": {"shares": [1, 2]},
        }))
        assert normalized.metadata == {
            "amount": "1500",
            "rate": "0.25",
            "fee": "12.50",
            "approved": True,
            "nested": {"shares": ["1", "2"]},
        }

    def test_payload_is_canonical_record(self, normalizer, make_event):
        normalized = normalizer.normalize(make_event())
        assert normalized.canonical_payload == Hasher.canonicalize(normalized.record())

    def test_record_time_from_clock(self, normalizer, make_event):
        occurred = datetime(2025, 12, 31, 23, 0, tzinfo=timezone.utc)
        normalized = normalizer.normalize(make_event(occurred_at=occurred))
        assert normalized.timestamp_utc == BASE_TIME
        assert normalized.occurred_at == occurred

    def test_entry_ids_unique(self, normalizer, make_event):
        event = make_event()
        assert normalizer.normalize(event).entry_id != normalizer.normalize(event).entry_id

    def test_metadata_hash_of_full_metadata(self, normalizer, make_event):
        normalized = normalizer.normalize(make_event(metadata={"amount": 10}))
        assert normalized.metadata_hash == Hasher.hash_data({"amount": "10"})
        assert not normalized.metadata_truncated


class TestCriticality:

    def test_high_assurance_default(self, normalizer, make_event):
        normalized = normalizer.normalize(make_event(event_type=EventType.NDA_SIGNED.value))
        assert normalized.criticality == Criticality.HIGH_ASSURANCE

    def test_best_effort_default(self, normalizer, make_event):
        normalized = normalizer.normalize(make_event(event_type="USER_LOGIN"))
        assert normalized.criticality == Criticality.BEST_EFFORT

    def test_unknown_type_is_best_effort(self):
        assert EventNormalizer.default_criticality("CUSTOM_THING") == Criticality.BEST_EFFORT

    def test_caller_override(self, normalizer, make_event):
        normalized = normalizer.normalize(make_event(
            event_type="USER_LOGIN",
            criticality="high_assurance",
        ))
        assert normalized.criticality == Criticality.HIGH_ASSURANCE


class TestIdempotencyKey:
    """Caller key, then source id, then content + occurred_at, then random."""

    def test_caller_key_kept(self, normalizer, make_event):
        assert normalizer.normalize(make_event(idempotency_key="abc")).idempotency_key == "abc"

    def test_source_event_id(self, normalizer, make_event):
        first = normalizer.normalize(make_event(idempotency_key=None, source_event_id="webhook-1"))
        second = normalizer.normalize(make_event(idempotency_key=None, source_event_id="webhook-1"))
        assert first.idempotency_key.startswith("src:")
        assert first.idempotency_key == second.idempotency_key

    def test_content_with_occurred_at(self, normalizer, make_event):
        occurred = datetime(2026, 2, 1, 8, 30, tzinfo=timezone.utc)
        event = make_event(idempotency_key=None, occurred_at=occurred)
        first = normalizer.normalize(event)
        second = normalizer.normalize(event)
        assert first.idempotency_key.startswith("content:")
        assert first.idempotency_key == second.idempotency_key

    def test_content_key_depends_on_metadata(self, normalizer, make_event):
        occurred = datetime(2026, 2, 1, 8, 30, tzinfo=timezone.utc)
        first = normalizer.normalize(make_event(idempotency_key=None, occurred_at=occurred, metadata={"a": 1}))
        second = normalizer.normalize(make_event(idempotency_key=None, occurred_at=occurred, metadata={"a": 2}))
        assert first.idempotency_key != second.idempotency_key

    def test_random_fallback(self, normalizer, make_event):
        event = make_event(idempotency_key=None)
        first = normalizer.normalize(event)
        second = normalizer.normalize(event)
        assert first.idempotency_key.startswith("rand:")
        assert first.idempotency_key != second.idempotency_key


class TestMetadataBound:
    """Oversized metadata is stored truncated, hashed in full."""

    @pytest.fixture
    def small(self, clock):
        return EventNormalizer(LedgerConfig(metadata_max_bytes=64), clock=clock)

    def test_truncation(self, small, make_event):
        metadata = {"a": "x" * 200, "b": "short"}
        normalized = small.normalize(make_event(metadata=metadata))

        assert normalized.metadata_truncated
        assert normalized.metadata_hash == Hasher.hash_data(metadata)
        assert normalized.metadata_original_bytes == len(
            json.dumps(metadata, sort_keys=True, separators=(",", ":"))
        )
        stored = json.dumps(normalized.metadata, sort_keys=True, separators=(",", ":"))
        assert len(stored) <= 64
        assert normalized.metadata["a"].endswith(TRUNCATION_MARKER)
        assert normalized.metadata["a"].startswith("xxx")
        assert "b" not in normalized.metadata

    def test_keys_kept_in_sorted_order_while_they_fit(self, small, make_event):
        metadata = {"a": "1", "b": "2", "z": "y" * 100}
        normalized = small.normalize(make_event(metadata=metadata))
        assert normalized.metadata["a"] == "1"
        assert normalized.metadata["b"] == "2"
        assert normalized.metadata["z"].endswith(TRUNCATION_MARKER)

    def test_non_string_value_dropped(self, small, make_event):
        metadata = {"list": ["v" * 10] * 10}
        normalized = small.normalize(make_event(metadata=metadata))
        assert normalized.metadata_truncated
        assert normalized.metadata == {}

    def test_small_metadata_untouched(self, small, make_event):
        normalized = small.normalize(make_event(metadata={"a": "1"}))
        assert not normalized.metadata_truncated
        assert normalized.metadata == {"a": "1"}
