"""
Tests for the HTTP surface.

Runs the FastAPI app in-process against InMemoryLedgerStore.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from auditchain.core import DispatchConfig, LedgerConfig, SequenceConflict, verify_bundle
from auditchain.db import InMemoryLedgerStore
from auditchain.main import create_app
from auditchain.services import build_services


EVENT = {
    "event_type": "DOCUMENT_VIEWED",
    "resource_type": "document",
    "resource_id": "doc-1",
    "actor_id": "user-7",
    "metadata": {"page": 3},
}


class AlwaysConflictingStore(InMemoryLedgerStore):

    def _do_commit(self, ctx, entry):
        raise SequenceConflict("lost the race")


def make_client(store, signing_service, config=None):
    services = build_services(
        store=store,
        config=config or LedgerConfig(append_backoff_ms=1.0, append_max_backoff_ms=2.0),
        dispatch_config=DispatchConfig(enabled=False),
        signing_service=signing_service,
    )
    return TestClient(create_app(services))


@pytest.fixture
def client(store, signing_service):
    with make_client(store, signing_service) as c:
        yield c


def post_events(client, n, chain_id="team_42"):
    receipts = []
    for i in range(n):
        response = client.post(
            f"/api/chains/{chain_id}/entries",
            json={**EVENT, "resource_id": f"doc-{i}", "idempotency_key": f"req-{i}"},
        )
        assert response.status_code == 201, response.text
        receipts.append(response.json())
    return receipts


class TestAppendEndpoint:

    def test_created(self, client, store):
        response = client.post(
            "/api/chains/team_42/entries",
            json=EVENT,
            headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
        )
        assert response.status_code == 201
        body = response.json()
        assert body["sequence"] == 0
        assert len(body["entry_hash"]) == 64

        entry = store.get_entry("team_42", 0)
        assert entry.entry_id == body["entry_id"]
        assert entry.ip_address == "203.0.113.9"

    def test_idempotent_retry(self, client):
        payload = {**EVENT, "idempotency_key": "req-1"}
        first = client.post("/api/chains/team_42/entries", json=payload).json()
        second = client.post("/api/chains/team_42/entries", json=payload).json()
        assert second == first

    def test_bad_event_type(self, client):
        response = client.post("/api/chains/team_42/entries", json={**EVENT, "event_type": "viewed"})
        assert response.status_code == 422
        assert response.json()["code"] == "validation"

    def test_missing_field(self, client):
        payload = {k: v for k, v in EVENT.items() if k != "actor_id"}
        response = client.post("/api/chains/team_42/entries", json=payload)
        assert response.status_code == 422
        assert response.json()["code"] == "validation"

    def test_bad_chain_id(self, client):
        response = client.post("/api/chains/bad%20chain/entries", json=EVENT)
        assert response.status_code == 422

    def test_contention_is_retryable(self, signing_service):
        config = LedgerConfig(append_max_attempts=2, append_backoff_ms=1.0, append_max_backoff_ms=1.0)
        with make_client(AlwaysConflictingStore(), signing_service, config) as client:
            response = client.post("/api/chains/team_42/entries", json=EVENT)

        assert response.status_code == 409
        assert response.headers["Retry-After"] == "1"
        body = response.json()
        assert body["code"] == "contention"
        assert body["retryable"] is True


class TestQueries:

    def test_chain_header(self, client):
        receipts = post_events(client, 3)
        body = client.get("/api/chains/team_42").json()
        assert body["length"] == 3
        assert body["tip_hash"] == receipts[-1]["entry_hash"]

    def test_list_chains(self, client):
        post_events(client, 1, chain_id="team_b")
        post_events(client, 1, chain_id="team_a")
        assert [c["chain_id"] for c in client.get("/api/chains").json()] == ["team_a", "team_b"]

    def test_entries(self, client):
        post_events(client, 5)
        response = client.get("/api/chains/team_42/entries", params={"from_sequence": 1, "limit": 2})
        assert [e["sequence"] for e in response.json()] == [1, 2]

        entry = client.get("/api/chains/team_42/entries/4").json()
        assert entry["resource_id"] == "doc-4"

        spot = client.get("/api/chains/team_42/entries/4/hash").json()
        assert spot["matches"] is True
        assert spot["entry_hash"] == entry["entry_hash"]

    def test_unknown_chain(self, client):
        response = client.get("/api/chains/nobody")
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"
        assert client.get("/api/chains/nobody/entries").status_code == 404
        assert client.get("/api/chains/nobody/verify").status_code == 404

    def test_unknown_entry(self, client):
        post_events(client, 1)
        assert client.get("/api/chains/team_42/entries/9").status_code == 404

    def test_integrity_and_verify(self, client):
        post_events(client, 4)
        integrity = client.get("/api/chains/team_42/integrity").json()
        assert integrity["is_valid"] is True
        assert integrity["chain_length"] == 4

        result = client.get("/api/chains/team_42/verify").json()
        assert result["is_valid"] is True
        assert result["verified_entries"] == 4

    def test_verify_reports_defects_with_200(self, client, store):
        post_events(client, 4)
        entry = store._entries["team_42"][1]
        store._entries["team_42"][1] = entry.model_copy(update={"actor_id": "mallory"})

        response = client.get("/api/chains/team_42/verify", params={"from_sequence": 0})
        assert response.status_code == 200
        body = response.json()
        assert body["is_valid"] is False
        assert body["first_invalid_entry"] == 1


class TestExportEndpoint:

    @staticmethod
    def _window():
        today = datetime.now(timezone.utc).date()
        return {
            "from_date": (today - timedelta(days=1)).isoformat(),
            "to_date": (today + timedelta(days=1)).isoformat(),
        }

    def test_signed_bundle(self, client, signing_keys):
        post_events(client, 3)
        response = client.post(
            "/api/chains/team_42/export",
            json={**self._window(), "exported_by": "auditor@example.com"},
        )
        assert response.status_code == 200
        assert "attachment" in response.headers["Content-Disposition"]

        bundle = response.json()
        assert response.headers["X-Bundle-Checksum"] == bundle["export_metadata"]["checksum"]
        assert len(bundle["entries"]) == 3

        _, public_key = signing_keys
        report = verify_bundle(bundle, trusted_public_key=public_key)
        assert report.is_valid, report.problems

    def test_tampered_chain_refused(self, client, store):
        post_events(client, 3)
        entry = store._entries["team_42"][1]
        store._entries["team_42"][1] = entry.model_copy(update={"metadata": {"page": "7"}})

        response = client.post("/api/chains/team_42/export", json=self._window())
        assert response.status_code == 409
        body = response.json()
        assert body["code"] == "integrity_violation"
        assert body["verification"]["first_invalid_entry"] == 1

    def test_reversed_dates(self, client):
        post_events(client, 1)
        window = self._window()
        response = client.post(
            "/api/chains/team_42/export",
            json={"from_date": window["to_date"], "to_date": window["from_date"]},
        )
        assert response.status_code == 422


class TestSystemEndpoints:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_health_detailed(self, client):
        post_events(client, 2)
        response = client.get("/health/detailed")
        assert response.status_code == 200
        checks = response.json()["checks"]
        assert checks["ledger_store"]["chain_count"] == 1
        assert checks["chain_integrity"]["invalid_chains"] == []

    def test_health_detailed_flags_tampering(self, client, store):
        post_events(client, 2)
        entry = store._entries["team_42"][1]
        store._entries["team_42"][1] = entry.model_copy(update={"entry_hash": "d" * 64})

        response = client.get("/health/detailed")
        assert response.status_code == 503
        assert response.json()["checks"]["chain_integrity"]["invalid_chains"] == ["team_42"]

    def test_metrics(self, client):
        post_events(client, 2)
        body = client.get("/metrics").json()
        assert body["dispatcher"]["enabled"] is False
        assert body["appends"]["entries_appended"] == 2
        assert body["http"]["requests_total"] >= 2
