"""
Tests for chain verification.

Mutation is an integrity violation; deletion is a sequence gap.
Every defect is reported, not only the first.
"""

import pytest

from auditchain.core import (
    ChainNotFound,
    IntegrityViolation,
    SequenceGapDetected,
    Hasher,
    ValidationError,
    replay,
)
from auditchain.schemas import DefectCategory, DefectKind


def tamper(store, chain_id, sequence, **update):
    """Overwrite a stored entry in place, as someone with database access would."""
    entry = store._entries[chain_id][sequence]
    store._entries[chain_id][sequence] = entry.model_copy(update=update)


class TestFullReplay:

    def test_clean_chain(self, verifier, append_events):
        append_events(10)
        result = verifier.verify("team_42")
        assert result.is_valid
        assert result.total_entries == 10
        assert result.verified_entries == 10
        assert result.first_invalid_entry is None
        assert result.errors == []

    def test_metadata_mutation(self, store, verifier, append_events):
        """Mutating entry 5 flags 5 and every entry after it."""
        append_events(10)
        tamper(store, "team_42", 5, metadata={"page": "999"})

        result = verifier.verify("team_42")
        assert not result.is_valid
        assert result.first_invalid_entry == 5
        flagged = {d.sequence for d in result.errors}
        assert flagged == set(range(5, 10))
        assert result.verified_entries == 5
        assert not result.has_gaps
        assert {d.kind for d in result.defects_at(5)} == {
            DefectKind.PAYLOAD_MISMATCH,
            DefectKind.HASH_MISMATCH,
        }
        assert DefectKind.LINK_MISMATCH in {d.kind for d in result.defects_at(6)}

    def test_consistent_rewrite_still_detected(self, store, verifier, append_events):
        """Rewriting fields AND canonical_payload still breaks the hash."""
        entries = append_events(5)
        forged = entries[2].model_copy(update={"actor_id": "someone-else"})
        tamper(
            store, "team_42", 2,
            actor_id="someone-else",
            canonical_payload=Hasher.canonicalize(forged.record()),
        )
        result = verifier.verify("team_42")
        assert result.first_invalid_entry == 2
        assert [d.kind for d in result.defects_at(2)] == [DefectKind.HASH_MISMATCH]

    def test_hash_mutation(self, store, verifier, append_events):
        append_events(4)
        tamper(store, "team_42", 1, entry_hash="f" * 64)
        result = verifier.verify("team_42")
        assert result.first_invalid_entry == 1
        assert DefectKind.HASH_MISMATCH in {d.kind for d in result.defects_at(1)}
        # Entry 2 still links to the real hash of 1, but the chain is broken
        assert [d.kind for d in result.defects_at(2)] == [DefectKind.CHAIN_BROKEN]

    def test_deletion_is_a_gap(self, store, verifier, append_events):
        append_events(10)
        del store._entries["team_42"][4]

        result = verifier.verify("team_42")
        assert not result.is_valid
        assert result.has_gaps
        assert not result.has_integrity_violations
        assert result.first_invalid_entry == 4
        assert [d.category for d in result.errors] == [DefectCategory.SEQUENCE_GAP]
        assert result.verified_entries == 9

        with pytest.raises(SequenceGapDetected):
            verifier.verify_or_raise("team_42")

    def test_trailing_deletion(self, store, verifier, append_events):
        append_events(5)
        del store._entries["team_42"][4]
        result = verifier.verify("team_42")
        assert [d.kind for d in result.errors] == [DefectKind.SEQUENCE_GAP]
        assert result.errors[0].sequence == 4

    def test_mutation_raises_integrity_violation(self, store, verifier, append_events):
        append_events(3)
        tamper(store, "team_42", 0, resource_id="other")
        with pytest.raises(IntegrityViolation) as exc_info:
            verifier.verify_or_raise("team_42")
        assert not isinstance(exc_info.value, SequenceGapDetected)
        assert exc_info.value.result.first_invalid_entry == 0

    def test_header_tip_mismatch(self, store, verifier, append_events):
        append_events(3)
        chain = store._chains["team_42"]
        store._chains["team_42"] = chain.model_copy(update={"tip_hash": "a" * 64})

        result = verifier.verify("team_42")
        assert [d.kind for d in result.errors] == [DefectKind.TIP_MISMATCH]

    def test_header_rolled_back(self, store, verifier, append_events):
        """Header moved back to entry 2 while entries 3-4 stay stored."""
        entries = append_events(5)
        chain = store._chains["team_42"]
        store._chains["team_42"] = chain.model_copy(
            update={"length": 3, "tip_hash": entries[2].entry_hash}
        )

        result = verifier.verify("team_42")
        assert not result.is_valid
        assert [d.kind for d in result.errors] == [DefectKind.TIP_MISMATCH]
        assert result.first_invalid_entry == 3
        assert result.verified_entries == 3
        with pytest.raises(IntegrityViolation):
            verifier.verify_or_raise("team_42")

    def test_append_after_snapshot_is_not_tampering(self, store, verifier, append_events):
        append_events(3)
        snapshot = store.get_chain("team_42")
        append_events(2)

        result = verifier.verify_window(snapshot)
        assert result.is_valid
        assert result.total_entries == 3

    def test_unknown_chain(self, verifier):
        with pytest.raises(ChainNotFound):
            verifier.verify("nobody")

    def test_does_not_stop_at_first_defect(self, store, verifier, append_events):
        append_events(10)
        tamper(store, "team_42", 2, resource_id="x")
        del store._entries["team_42"][7]
        result = verifier.verify("team_42")
        assert result.has_gaps
        assert result.has_integrity_violations
        assert 7 in {d.sequence for d in result.errors if d.category == DefectCategory.SEQUENCE_GAP}


class TestRangedReplay:

    def test_sub_range(self, verifier, append_events):
        append_events(10)
        result = verifier.verify("team_42", 3, 6)
        assert result.is_valid
        assert result.total_entries == 4
        assert result.from_sequence == 3
        assert result.to_sequence == 6

    def test_defect_outside_range_not_reported(self, store, verifier, append_events):
        append_events(10)
        tamper(store, "team_42", 8, resource_id="x")
        assert verifier.verify("team_42", 0, 5).is_valid
        assert not verifier.verify("team_42", 5).is_valid

    def test_mutated_anchor_breaks_first_link(self, store, verifier, append_events):
        """The window trusts the anchor's stored hash, so a changed hash shows at the link."""
        append_events(10)
        tamper(store, "team_42", 2, entry_hash="b" * 64)
        result = verifier.verify("team_42", 3, 5)
        assert result.first_invalid_entry == 3
        assert DefectKind.LINK_MISMATCH in {d.kind for d in result.defects_at(3)}

    def test_missing_anchor(self, store, verifier, append_events):
        append_events(10)
        del store._entries["team_42"][2]
        result = verifier.verify("team_42", 3, 5)
        assert not result.is_valid
        assert result.first_invalid_entry == 2
        assert result.errors[0].category == DefectCategory.SEQUENCE_GAP

    def test_to_sequence_capped_at_tip(self, verifier, append_events):
        append_events(4)
        result = verifier.verify("team_42", 1, 100)
        assert result.is_valid
        assert result.to_sequence == 3

    @pytest.mark.parametrize("start,end", [(-1, None), (5, 2), (10, None)])
    def test_malformed_range(self, verifier, append_events, start, end):
        append_events(10)
        with pytest.raises(ValidationError):
            verifier.verify("team_42", start, end)


class TestPureReplay:

    def test_matches_store_backed_result(self, store, verifier, append_events):
        append_events(6)
        tamper(store, "team_42", 3, actor_id="mallory")
        entries = store.list_entries("team_42")
        chain = store.get_chain("team_42")

        offline = replay(entries, "team_42", end_sequence=5, chain=chain)
        online = verifier.verify("team_42")
        assert [(d.kind, d.sequence) for d in offline.errors] == [(d.kind, d.sequence) for d in online.errors]

    def test_foreign_entry(self, store, append_events):
        entries = append_events(2)
        result = replay(entries, "other_chain")
        assert {d.kind for d in result.errors} == {DefectKind.PAYLOAD_MISMATCH}
        assert result.first_invalid_entry == 0

    def test_duplicate_sequence(self, append_events):
        entries = append_events(3)
        result = replay(entries + [entries[1]], "team_42")
        assert DefectKind.SEQUENCE_ORDER in {d.kind for d in result.errors}


class TestShallowIntegrity:

    def test_clean(self, verifier, append_events):
        entries = append_events(5)
        status = verifier.integrity("team_42")
        assert status.is_valid
        assert status.chain_length == 5
        assert status.latest_hash == entries[-1].entry_hash

    def test_tip_tampered(self, store, verifier, append_events):
        append_events(5)
        tamper(store, "team_42", 4, entry_hash="c" * 64)
        status = verifier.integrity("team_42")
        assert not status.is_valid
        assert "tip hash does not match" in status.message

    def test_deleted_entry_changes_count(self, store, verifier, append_events):
        append_events(5)
        del store._entries["team_42"][1]
        status = verifier.integrity("team_42")
        assert not status.is_valid
        assert "4 entries stored" in status.message

    def test_unknown_chain(self, verifier):
        with pytest.raises(ChainNotFound):
            verifier.integrity("nobody")
