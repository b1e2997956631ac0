"""
Shared fixtures for the audit ledger tests.

Everything runs against InMemoryLedgerStore; no database is needed.
"""

from datetime import datetime, timedelta, timezone
from itertools import count

import pytest

from auditchain.core import (
    ChainAppendEngine,
    ChainVerifier,
    EventNormalizer,
    LedgerConfig,
    Signer,
    SigningService,
)
from auditchain.db import InMemoryLedgerStore
from auditchain.observability import get_metrics


BASE_TIME = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class StepClock:
    """Deterministic record-time clock: each call advances by `step`."""

    def __init__(self, start: datetime = BASE_TIME, step: timedelta = timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = current + self.step
        return current


@pytest.fixture(autouse=True)
def reset_metrics():
    get_metrics().reset()
    yield
    get_metrics().reset()


@pytest.fixture
def config():
    # Generous retry budget so concurrency tests never exhaust it
    return LedgerConfig(
        append_max_attempts=1000,
        append_deadline_seconds=30.0,
        append_backoff_ms=1.0,
        append_max_backoff_ms=5.0,
    )


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store():
    return InMemoryLedgerStore()


@pytest.fixture
def normalizer(config, clock):
    return EventNormalizer(config, clock=clock)


@pytest.fixture
def engine(store, config):
    return ChainAppendEngine(store, config)


@pytest.fixture
def verifier(store):
    return ChainVerifier(store)


@pytest.fixture
def make_event():
    """Factory for raw audit events."""
    counter = count()

    def _make(chain_id: str = "team_42", **overrides) -> dict:
        n = next(counter)
        event = {
            "chain_id": chain_id,
            "event_type": "DOCUMENT_VIEWED",
            "resource_type": "document",
            "resource_id": f"doc-{n}",
            "actor_id": "user-7",
            "metadata": {"page": n},
            "idempotency_key": f"evt-{chain_id}-{n}",
        }
        event.update(overrides)
        return event

    return _make


@pytest.fixture
def append_events(engine, normalizer, make_event):
    """Append `n` events to a chain and return the committed entries."""

    def _append(n: int, chain_id: str = "team_42", **overrides):
        entries = []
        for _ in range(n):
            event = normalizer.normalize(make_event(chain_id, **overrides))
            entries.append(engine.append(chain_id, event))
        return entries

    return _append


@pytest.fixture
def signing_keys(monkeypatch):
    """A configured (non-ephemeral) export key. Returns (private, public)."""
    private_key, public_key = Signer.generate_keypair()
    monkeypatch.setenv("AUDITCHAIN_EXPORT_PRIVATE_KEY", private_key)
    monkeypatch.setenv("AUDITCHAIN_EXPORT_PUBLIC_KEY", public_key)
    SigningService.reset()
    yield private_key, public_key
    SigningService.reset()


@pytest.fixture
def signing_service(signing_keys):
    return SigningService()
