"""
Tests for the side-effect dispatcher.

Delivery never affects the ledger: full queues drop, failing subscribers
are retried and then dropped, duplicates are filtered per subscriber.
"""

import threading

import pytest

from auditchain.core import DispatchConfig, SideEffectDispatcher, TTLCache
from auditchain.observability import get_metrics


@pytest.fixture
def dispatch_config():
    return DispatchConfig(
        queue_size=100,
        max_delivery_attempts=2,
        retry_delay_seconds=0.01,
        poll_interval_seconds=0.01,
    )


@pytest.fixture
def dispatcher(dispatch_config):
    d = SideEffectDispatcher(dispatch_config)
    yield d
    d.stop()


class TestSynchronousDelivery:

    def test_delivers_to_every_subscriber(self, dispatcher, append_events):
        [entry] = append_events(1)
        seen = {"a": [], "b": []}
        dispatcher.subscribe("a", seen["a"].append)
        dispatcher.subscribe("b", seen["b"].append)

        assert dispatcher.publish(entry)
        assert dispatcher.pending == 2
        assert dispatcher.process_pending() == 2
        assert seen == {"a": [entry], "b": [entry]}
        assert get_metrics().side_effects_delivered == 2

    def test_duplicate_publish_delivered_once(self, dispatcher, append_events):
        [entry] = append_events(1)
        seen = []
        dispatcher.subscribe("notify", seen.append)

        dispatcher.publish(entry)
        dispatcher.publish(entry)
        assert dispatcher.process_pending() == 1
        assert seen == [entry]

    def test_failing_subscriber_retried_then_dropped(self, dispatcher, append_events):
        [entry] = append_events(1)
        calls = []

        def flaky(e):
            calls.append(e)
            raise RuntimeError("downstream is down")

        dispatcher.subscribe("flaky", flaky)
        dispatcher.publish(entry)

        assert dispatcher.process_pending() == 0  # attempt 1, requeued
        assert dispatcher.pending == 1
        assert dispatcher.process_pending() == 0  # attempt 2, dropped
        assert dispatcher.pending == 0
        assert len(calls) == 2
        assert get_metrics().side_effects_failed == 2
        assert get_metrics().side_effects_dropped == 1

    def test_retry_succeeds(self, dispatcher, append_events):
        [entry] = append_events(1)
        calls = []

        def once_flaky(e):
            calls.append(e)
            if len(calls) == 1:
                raise RuntimeError("timeout")

        dispatcher.subscribe("once", once_flaky)
        dispatcher.publish(entry)
        dispatcher.process_pending()
        assert dispatcher.process_pending() == 1
        assert len(calls) == 2

    def test_failure_isolated_per_subscriber(self, dispatcher, append_events):
        [entry] = append_events(1)
        seen = []
        dispatcher.subscribe("broken", lambda e: 1 / 0)
        dispatcher.subscribe("ok", seen.append)
        dispatcher.publish(entry)
        assert dispatcher.process_pending() == 1
        assert seen == [entry]

    def test_full_queue_drops(self, append_events):
        dispatcher = SideEffectDispatcher(DispatchConfig(queue_size=1))
        entries = append_events(2)
        dispatcher.subscribe("notify", lambda e: None)

        assert dispatcher.publish(entries[0])
        assert not dispatcher.publish(entries[1])
        assert get_metrics().side_effects_dropped == 1

    def test_disabled(self, append_events):
        dispatcher = SideEffectDispatcher(DispatchConfig(enabled=False))
        dispatcher.subscribe("notify", lambda e: None)
        [entry] = append_events(1)
        assert not dispatcher.publish(entry)
        assert dispatcher.pending == 0
        dispatcher.start()
        assert not dispatcher.is_running

    def test_duplicate_subscriber_name(self, dispatcher):
        dispatcher.subscribe("notify", lambda e: None)
        with pytest.raises(ValueError):
            dispatcher.subscribe("notify", lambda e: None)

    def test_unsubscribed_messages_skipped(self, dispatcher, append_events):
        [entry] = append_events(1)
        dispatcher.subscribe("gone", lambda e: None)
        dispatcher.publish(entry)
        dispatcher.unsubscribe("gone")
        assert dispatcher.process_pending() == 0
        assert dispatcher.pending == 0


class TestBackgroundWorker:

    def test_worker_delivers(self, dispatcher, append_events):
        entries = append_events(5)
        delivered = []
        done = threading.Event()

        def handler(e):
            delivered.append(e.sequence)
            if len(delivered) == 5:
                done.set()

        dispatcher.subscribe("worker", handler)
        dispatcher.start()
        assert dispatcher.is_running
        for entry in entries:
            dispatcher.publish(entry)

        assert done.wait(timeout=5)
        assert dispatcher.drain(timeout=5)
        assert sorted(delivered) == [0, 1, 2, 3, 4]

        dispatcher.stop()
        assert not dispatcher.is_running

    def test_status(self, dispatcher):
        dispatcher.subscribe("worker", lambda e: None)
        status = dispatcher.status()
        assert status["enabled"] is True
        assert status["running"] is False
        assert status["subscribers"] == ["worker"]
        assert status["dedup_entries"] == 0

    def test_expired_dedup_keys_swept(self, dispatch_config, append_events):
        now = [0.0]
        dispatcher = SideEffectDispatcher(
            dispatch_config,
            dedup_cache=TTLCache(capacity=100, ttl_seconds=60, clock=lambda: now[0]),
        )
        [entry] = append_events(1)
        dispatcher.subscribe("notify", lambda e: None)

        dispatcher.publish(entry)
        dispatcher.process_pending()
        assert dispatcher.status()["dedup_entries"] == 1

        now[0] = 61.0
        assert dispatcher.sweep_dedup() == 1
        assert dispatcher.status()["dedup_entries"] == 0


def test_config_from_env(monkeypatch):
    monkeypatch.setenv("AUDITCHAIN_DISPATCH_ENABLED", "false")
    monkeypatch.setenv("AUDITCHAIN_DISPATCH_QUEUE_SIZE", "7")
    config = DispatchConfig.from_env()
    assert config.enabled is False
    assert config.queue_size == 7
