"""
Tests for the criticality policy in AuditRecorder.
"""

import pytest

from auditchain.core import (
    AuditRecorder,
    ChainAppendEngine,
    ContentionError,
    DispatchConfig,
    LedgerConfig,
    SequenceConflict,
    SideEffectDispatcher,
    StorageUnavailable,
    ValidationError,
)
from auditchain.db import InMemoryLedgerStore
from auditchain.observability import get_metrics
from auditchain.schemas import AppendReceipt, Criticality


class AlwaysConflictingStore(InMemoryLedgerStore):

    def _do_commit(self, ctx, entry):
        raise SequenceConflict("lost the race")


class DownStore(InMemoryLedgerStore):

    def _do_commit(self, ctx, entry):
        raise StorageUnavailable("connection reset")


def recorder_for(store, normalizer, dispatcher=None):
    engine = ChainAppendEngine(store, LedgerConfig(append_max_attempts=2), sleep=lambda s: None)
    return AuditRecorder(engine, normalizer=normalizer, dispatcher=dispatcher)


class TestRecord:

    def test_success_returns_receipt(self, store, normalizer, make_event):
        recorder = recorder_for(store, normalizer)
        receipt = recorder.record(make_event())
        assert isinstance(receipt, AppendReceipt)
        assert receipt.sequence == 0
        assert store.get_chain("team_42").tip_hash == receipt.entry_hash

    def test_best_effort_contention_degrades(self, normalizer, make_event):
        recorder = recorder_for(AlwaysConflictingStore(), normalizer)
        event = make_event(criticality=Criticality.BEST_EFFORT.value)

        assert recorder.record(event) is None
        assert get_metrics().degraded_appends == 1

    def test_best_effort_unavailable_degrades(self, normalizer, make_event):
        recorder = recorder_for(DownStore(), normalizer)
        assert recorder.record(make_event(criticality="best_effort")) is None
        assert get_metrics().degraded_appends == 1

    def test_high_assurance_contention_fails_the_action(self, normalizer, make_event):
        recorder = recorder_for(AlwaysConflictingStore(), normalizer)
        with pytest.raises(ContentionError):
            recorder.record(make_event(criticality="high_assurance"))
        assert get_metrics().degraded_appends == 0

    def test_high_assurance_by_event_type(self, normalizer, make_event):
        recorder = recorder_for(DownStore(), normalizer)
        with pytest.raises(StorageUnavailable):
            recorder.record(make_event(event_type="DOCUMENT_SIGNED"))

    def test_validation_always_propagates(self, store, normalizer, make_event):
        recorder = recorder_for(store, normalizer)
        with pytest.raises(ValidationError):
            recorder.record(make_event(event_type="not-upper", criticality="best_effort"))
        assert store.get_chain("team_42") is None


class TestStrictAppend:

    def test_append_returns_entry(self, store, normalizer, make_event):
        entry = recorder_for(store, normalizer).append(make_event())
        assert entry.sequence == 0
        assert entry.chain_id == "team_42"

    def test_append_ignores_criticality(self, normalizer, make_event):
        recorder = recorder_for(AlwaysConflictingStore(), normalizer)
        with pytest.raises(ContentionError):
            recorder.append(make_event(criticality="best_effort"))


class TestSideEffects:

    def test_committed_entries_are_published(self, store, normalizer, make_event):
        dispatcher = SideEffectDispatcher(DispatchConfig())
        seen = []
        dispatcher.subscribe("notify", seen.append)
        recorder = recorder_for(store, normalizer, dispatcher)

        receipt = recorder.record(make_event())
        dispatcher.process_pending()
        assert [e.entry_id for e in seen] == [receipt.entry_id]

    def test_nothing_published_when_not_committed(self, normalizer, make_event):
        dispatcher = SideEffectDispatcher(DispatchConfig())
        dispatcher.subscribe("notify", lambda e: None)
        recorder = recorder_for(AlwaysConflictingStore(), normalizer, dispatcher)

        recorder.record(make_event(criticality="best_effort"))
        assert dispatcher.pending == 0

    def test_failing_subscriber_does_not_fail_the_append(self, store, normalizer, make_event):
        dispatcher = SideEffectDispatcher(DispatchConfig(max_delivery_attempts=1))
        dispatcher.subscribe("broken", lambda e: 1 / 0)
        recorder = recorder_for(store, normalizer, dispatcher)

        receipt = recorder.record(make_event())
        dispatcher.process_pending()
        assert receipt is not None
        assert store.get_chain("team_42").length == 1
