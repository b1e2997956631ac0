"""
Chain Verifier

Replays a chain (fully or over a range) and reports every break.

REPLAY RULES:
1. Running expected-previous-hash is seeded from GENESIS_HASH (full replay)
   or the anchor's entry_hash (partial replay, anchor = from_sequence - 1)
2. For every entry:
   - canonical payload is recomputed from the stored fields
     (payload_mismatch if it differs from the stored canonical_payload)
   - stored prev_hash is compared with the running hash (link_mismatch)
   - entry_hash is recomputed from the recomputed payload, the running hash
     and the sequence (hash_mismatch if it differs from the stored one)
   - the running hash advances to the RECOMPUTED hash, so one mutated
     entry breaks the link of every entry after it
3. Once an integrity defect is seen, every later entry without a defect of
   its own is still flagged chain_broken
4. Missing sequence numbers are sequence_gap defects, a separate category
   (deletion rather than in-place tampering). The link across a gap cannot
   be checked, so the running hash re-seeds from the next entry's prev_hash
5. When the replay reaches the end of the chain, the chain header
   (tip_hash, length) is compared with what was actually scanned. An entry
   stored past the header tip is a tip_mismatch unless a concurrent append
   moved the header meanwhile
6. Scanning never stops early: compliance review needs every defect

Verification is read-only. replay() is a pure function over entries so an
exported bundle can be re-verified offline with exactly the same code.
"""

from datetime import datetime, timezone
from typing import Iterable, Optional, TYPE_CHECKING

from ..observability import get_logger, get_metrics
from ..schemas import (
    ChainDefect,
    DefectKind,
    IntegrityStatus,
    LedgerChain,
    LedgerEntry,
    VerificationResult,
)
from .errors import ChainNotFound, IntegrityViolation, SequenceGapDetected, ValidationError
from .hasher import GENESIS_HASH, CanonicalSerializationError, Hasher

if TYPE_CHECKING:
    from ..db.store import LedgerStore

logger = get_logger(__name__)


# ============================================================
# PURE REPLAY
# ============================================================

def replay(
    entries: Iterable[LedgerEntry],
    chain_id: str,
    seed_hash: Optional[str] = GENESIS_HASH,
    start_sequence: int = 0,
    end_sequence: Optional[int] = None,
    chain: Optional[LedgerChain] = None,
) -> VerificationResult:
    """
    Replay entries in ascending sequence order and collect every defect.

    Args:
        entries: Entries of one chain, ascending by sequence
        chain_id: Chain the entries must belong to
        seed_hash: Expected prev_hash of start_sequence; None if unknown
            (missing anchor), in which case the first entry is trusted
        start_sequence: First sequence of the window
        end_sequence: Last sequence of the window; missing trailing
            sequences up to it are gaps
        chain: Chain header to check the tip against (only when the window
            reaches the end of the chain)
    """
    errors: list[ChainDefect] = []
    defective: set[int] = set()
    scanned: list[LedgerEntry] = []

    def flag(defect: ChainDefect) -> None:
        errors.append(defect)
        if defect.sequence is not None:
            defective.add(defect.sequence)

    last_header_sequence = chain.length - 1 if chain is not None else None
    expected = start_sequence
    running = seed_hash
    broken = False

    for entry in entries:
        seq = entry.sequence
        scanned.append(entry)

        if seq < expected:
            flag(ChainDefect.integrity(
                DefectKind.SEQUENCE_ORDER,
                seq,
                f"Sequence {seq} is duplicated or out of order (expected {expected})",
            ))
            continue

        if seq > expected:
            flag(ChainDefect.gap(expected, seq - 1))
            running = None

        own: list[ChainDefect] = []

        if entry.chain_id != chain_id:
            own.append(ChainDefect.integrity(
                DefectKind.PAYLOAD_MISMATCH,
                seq,
                f"Entry {seq} belongs to chain {entry.chain_id!r}",
            ))

        try:
            payload = Hasher.canonicalize(entry.record())
        except CanonicalSerializationError:
            payload = None
        if payload is None or payload != entry.canonical_payload:
            own.append(ChainDefect.integrity(
                DefectKind.PAYLOAD_MISMATCH,
                seq,
                f"Entry {seq} fields do not match its stored canonical payload",
            ))
            if payload is None:
                payload = entry.canonical_payload

        if running is None:
            # Re-seed after a gap or a missing anchor
            running = entry.prev_hash
        elif not Hasher.constant_time_compare(entry.prev_hash, running):
            own.append(ChainDefect.integrity(
                DefectKind.LINK_MISMATCH,
                seq,
                f"Entry {seq} links to {entry.prev_hash[:16]}..., "
                f"expected {running[:16]}...",
            ))

        try:
            recomputed = Hasher.hash_entry(payload, running, seq)
        except CanonicalSerializationError:
            recomputed = None
        if recomputed is None or not Hasher.constant_time_compare(recomputed, entry.entry_hash):
            own.append(ChainDefect.integrity(
                DefectKind.HASH_MISMATCH,
                seq,
                f"Entry {seq} stored hash {entry.entry_hash[:16]}... "
                f"does not match recomputed hash",
            ))

        if end_sequence is not None and seq > end_sequence:
            own.append(ChainDefect.integrity(
                DefectKind.SEQUENCE_ORDER,
                seq,
                f"Entry {seq} lies outside the window ending at {end_sequence}",
            ))

        if last_header_sequence is not None and seq > last_header_sequence:
            own.append(ChainDefect.integrity(
                DefectKind.TIP_MISMATCH,
                seq,
                f"Entry {seq} lies beyond the chain header length {chain.length}",
            ))

        if own:
            broken = True
            for defect in own:
                flag(defect)
        elif broken:
            flag(ChainDefect.integrity(
                DefectKind.CHAIN_BROKEN,
                seq,
                f"Entry {seq} follows a broken entry",
            ))

        running = recomputed if recomputed is not None else entry.entry_hash
        expected = seq + 1

    if end_sequence is not None and expected <= end_sequence:
        flag(ChainDefect.gap(expected, end_sequence))

    if chain is not None:
        _check_tip(chain, scanned, end_sequence, flag)

    verified = sum(1 for entry in scanned if entry.sequence not in defective)
    sequences = [d.sequence for d in errors if d.sequence is not None]

    return VerificationResult(
        chain_id=chain_id,
        is_valid=not errors,
        total_entries=len(scanned),
        verified_entries=verified,
        first_invalid_entry=min(sequences) if sequences else None,
        errors=errors,
        from_sequence=start_sequence,
        to_sequence=end_sequence,
        verified_at=datetime.now(timezone.utc),
    )


def _check_tip(chain: LedgerChain, scanned: list[LedgerEntry], end_sequence: Optional[int], flag) -> None:
    if chain.genesis_hash != GENESIS_HASH:
        flag(ChainDefect.integrity(
            DefectKind.TIP_MISMATCH,
            None,
            f"Chain header genesis hash {chain.genesis_hash[:16]}... is not the genesis constant",
        ))

    last = chain.length - 1
    if end_sequence is not None and end_sequence < last:
        return  # window ends before the tip

    if chain.length == 0:
        if chain.tip_hash != GENESIS_HASH:
            flag(ChainDefect.integrity(
                DefectKind.TIP_MISMATCH,
                None,
                "Empty chain header does not point at the genesis hash",
            ))
        return

    tip_entry = next((e for e in reversed(scanned) if e.sequence == last), None)
    if tip_entry is None:
        # Already reported as a trailing gap
        return
    if not Hasher.constant_time_compare(tip_entry.entry_hash, chain.tip_hash):
        flag(ChainDefect.integrity(
            DefectKind.TIP_MISMATCH,
            last,
            f"Chain header tip {chain.tip_hash[:16]}... does not match "
            f"entry {last} hash {tip_entry.entry_hash[:16]}...",
        ))


def raise_for_result(result: VerificationResult) -> None:
    """
    Raise the error matching a failed result.

    Raises:
        SequenceGapDetected: every defect is a gap
        IntegrityViolation: at least one hash/link/tip defect
    """
    if result.is_valid:
        return
    summary = (
        f"Chain {result.chain_id!r} failed verification: "
        f"{len(result.errors)} defect(s), first at sequence {result.first_invalid_entry}"
    )
    if not result.has_integrity_violations:
        raise SequenceGapDetected(summary, result)
    raise IntegrityViolation(summary, result)


# ============================================================
# STORE-BACKED VERIFIER
# ============================================================

class ChainVerifier:
    """
    Deep and shallow verification against a LedgerStore.

    Snapshot reads only; never blocks or is blocked by appenders.
    """

    def __init__(self, store: "LedgerStore"):
        self._store = store

    def verify(
        self,
        chain_id: str,
        from_sequence: Optional[int] = None,
        to_sequence: Optional[int] = None,
    ) -> VerificationResult:
        """
        Deep replay of a chain or a sub-range.

        Raises:
            ChainNotFound: chain has no entries yet
            ValidationError: the range is malformed
        """
        chain = self._store.get_chain(chain_id)
        if chain is None:
            raise ChainNotFound(f"Chain {chain_id!r} has no entries")
        return self.verify_window(chain, from_sequence, to_sequence)

    def verify_window(
        self,
        chain: LedgerChain,
        from_sequence: Optional[int] = None,
        to_sequence: Optional[int] = None,
    ) -> VerificationResult:
        """Replay against an already-read chain header snapshot."""
        start = from_sequence or 0
        if start < 0:
            raise ValidationError("from_sequence must be non-negative")
        if to_sequence is not None and to_sequence < start:
            raise ValidationError("to_sequence must not be below from_sequence")
        if start > 0 and start >= chain.length:
            raise ValidationError(
                f"from_sequence {start} is past the tip of chain {chain.chain_id!r} "
                f"(length {chain.length})"
            )

        chain_id = chain.chain_id
        # Bound the read by the snapshot; later appends are not part of it
        end = chain.length - 1 if to_sequence is None else min(to_sequence, chain.length - 1)

        seed: Optional[str] = GENESIS_HASH
        anchor_gap: Optional[ChainDefect] = None
        if start > 0:
            anchor = self._store.get_entry(chain_id, start - 1)
            if anchor is None:
                seed = None
                anchor_gap = ChainDefect.gap(
                    start - 1,
                    start - 1,
                    f"Anchor entry {start - 1} is missing",
                )
            else:
                seed = anchor.entry_hash

        entries = self._store.list_entries(chain_id, start, end) if end >= start else []
        result = replay(entries, chain_id, seed, start, end, chain)

        past_tip = self._past_tip_defect(chain) if end == chain.length - 1 else None
        if anchor_gap is not None:
            result.errors.insert(0, anchor_gap)
        if past_tip is not None:
            result.errors.append(past_tip)
        if anchor_gap is not None or past_tip is not None:
            sequences = [d.sequence for d in result.errors if d.sequence is not None]
            result.is_valid = False
            result.first_invalid_entry = min(sequences) if sequences else None

        metrics = get_metrics()
        metrics.increment("verifications_run")
        if not result.is_valid:
            metrics.increment("integrity_failures")
            logger.warning(
                "Chain verification failed",
                chain_id=chain_id,
                defects=len(result.errors),
                first_invalid_entry=result.first_invalid_entry,
                gaps=result.has_gaps,
            )
        else:
            logger.info(
                "Chain verified",
                chain_id=chain_id,
                from_sequence=start,
                to_sequence=end,
                entries=result.total_entries,
            )
        return result

    def verify_or_raise(
        self,
        chain_id: str,
        from_sequence: Optional[int] = None,
        to_sequence: Optional[int] = None,
    ) -> VerificationResult:
        result = self.verify(chain_id, from_sequence, to_sequence)
        raise_for_result(result)
        return result

    def integrity(self, chain_id: str) -> IntegrityStatus:
        """
        Cheap tip-consistency check.

        Compares the chain header with the highest stored entry, the stored
        entry count and the absence of entries past the tip. Does not replay.

        Raises:
            ChainNotFound: chain has no entries yet
        """
        chain = self._store.get_chain(chain_id)
        if chain is None:
            raise ChainNotFound(f"Chain {chain_id!r} has no entries")

        problems: list[str] = []

        if chain.genesis_hash != GENESIS_HASH:
            problems.append("genesis hash is not the genesis constant")

        if chain.length == 0:
            if chain.tip_hash != GENESIS_HASH:
                problems.append("empty chain does not point at genesis")
        else:
            tip = self._store.get_entry(chain_id, chain.length - 1)
            if tip is None:
                problems.append(f"tip entry {chain.length - 1} is missing")
            else:
                if not Hasher.constant_time_compare(tip.entry_hash, chain.tip_hash):
                    problems.append("tip hash does not match the highest entry")
                if not Hasher.verify_entry(tip.canonical_payload, tip.prev_hash, tip.sequence, tip.entry_hash):
                    problems.append("highest entry hash does not verify")

        count = self._store.count_entries(chain_id)
        if count != chain.length and not self._grew_to(chain, count):
            problems.append(f"header length {chain.length} but {count} entries stored")

        if self._store.get_entry(chain_id, chain.length) is not None \
                and not self._grew_to(chain, chain.length + 1):
            problems.append(f"entry {chain.length} exists past the recorded tip")

        is_valid = not problems
        if not is_valid:
            get_metrics().increment("integrity_failures")
            logger.warning("Shallow integrity check failed", chain_id=chain_id, problems=problems)

        return IntegrityStatus(
            chain_id=chain_id,
            is_valid=is_valid,
            chain_length=chain.length,
            genesis_hash=chain.genesis_hash,
            latest_hash=chain.tip_hash,
            last_verified_at=datetime.now(timezone.utc),
            message="; ".join(problems) if problems else None,
        )

    def _past_tip_defect(self, chain: LedgerChain) -> Optional[ChainDefect]:
        """An entry stored past the header tip that no concurrent append explains."""
        if self._store.get_entry(chain.chain_id, chain.length) is None:
            return None
        if self._grew_to(chain, chain.length + 1):
            return None
        return ChainDefect.integrity(
            DefectKind.TIP_MISMATCH,
            chain.length,
            f"Entry {chain.length} is stored past the chain header tip (length {chain.length})",
        )

    def _grew_to(self, chain: LedgerChain, length: int) -> bool:
        """True if a concurrent append explains an entry count of `length`."""
        fresh = self._store.get_chain(chain.chain_id)
        return fresh is not None and fresh.length >= length > chain.length
