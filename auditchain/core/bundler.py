"""
Export / Compliance Bundler

Produces self-contained, independently re-verifiable snapshots of a chain
or a sub-range of it.

BUNDLE LAYOUT (version 1.0):
    bundle_version    "1.0"
    chain             chain_id, genesis_hash, tip_hash, length (snapshot)
    range             from_sequence, to_sequence, from_time, to_time
    anchor            sequence + entry_hash of the entry before the window
                      (no payload), or null when the window starts at 0
    entries           the ordered entries of the window
    attestation       the verification result computed right before export
    export_metadata   exported_at, exported_by, entry_count,
                      canonicalization_version, hash_algorithm, checksum,
                      signature_algorithm, signature, public_key

CHECKSUM:
    SHA-256 of the canonical form of the whole bundle with checksum,
    signature, signature_algorithm and public_key removed from
    export_metadata. The signature is Ed25519 over the checksum.

EXPORT RULES:
1. The window is verified immediately before export; any defect aborts
   the export with IntegrityViolation / SequenceGapDetected
2. Entries are read page by page; the cancel flag is checked between
   pages (ExportCancelled)
3. Any read failure aborts with ExportFailed
4. The collected entries are replayed again and must reproduce the
   attestation, otherwise ExportFailed
5. A partial bundle is never returned

Export never writes to the ledger.
"""

import copy
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, time as dt_time, timezone
from typing import Any, Callable, Optional, TYPE_CHECKING

import pydantic

from ..observability import get_logger, get_metrics
from ..schemas import LedgerChain, LedgerEntry, VerificationResult
from .config import LedgerConfig
from .errors import (
    ChainNotFound,
    ExportCancelled,
    ExportFailed,
    IntegrityViolation,
    LedgerStoreError,
    StorageUnavailable,
    ValidationError,
)
from .hasher import GENESIS_HASH, HASH_ALGORITHM, CanonicalSerializationError, Hasher
from .signer import SIGNATURE_ALGORITHM, Signer
from .signing_service import SigningService, get_signing_service
from .verifier import ChainVerifier, raise_for_result, replay

if TYPE_CHECKING:
    from ..db.store import LedgerStore

logger = get_logger(__name__)

BUNDLE_VERSION = "1.0"

_UNSIGNED_FIELDS = ("checksum", "signature", "signature_algorithm", "public_key")
_REQUIRED_SECTIONS = ("bundle_version", "chain", "range", "entries", "attestation", "export_metadata")


class BundleFormatError(ValidationError):
    """Raised when a bundle is structurally invalid (not merely tampered)."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _window_start(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise ValidationError("from_date must be timezone-aware")
        return value
    return datetime.combine(value, dt_time.min, tzinfo=timezone.utc)


def _window_end(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise ValidationError("to_date must be timezone-aware")
        return value
    # A plain date covers the whole UTC day
    return datetime.combine(value, dt_time.max, tzinfo=timezone.utc)


def bundle_checksum(bundle: dict[str, Any]) -> str:
    """Checksum over everything in the bundle except the signing fields."""
    body = copy.deepcopy(bundle)
    metadata = body.get("export_metadata") or {}
    for name in _UNSIGNED_FIELDS:
        metadata.pop(name, None)
    body["export_metadata"] = metadata
    return Hasher.hash_data(body)


def _same_outcome(a: VerificationResult, b: VerificationResult) -> bool:
    """Compare two results ignoring when they were computed."""
    return (
        a.is_valid == b.is_valid
        and a.total_entries == b.total_entries
        and a.verified_entries == b.verified_entries
        and a.first_invalid_entry == b.first_invalid_entry
        and [(d.kind, d.sequence) for d in a.errors] == [(d.kind, d.sequence) for d in b.errors]
    )


# ============================================================
# EXPORT
# ============================================================

class ExportBundler:
    """Builds signed compliance bundles from a LedgerStore."""

    def __init__(
        self,
        store: "LedgerStore",
        verifier: Optional[ChainVerifier] = None,
        config: Optional[LedgerConfig] = None,
        signing_service: Optional[SigningService] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._verifier = verifier or ChainVerifier(store)
        self._config = config or LedgerConfig.from_env()
        self._signing = signing_service or get_signing_service()
        self._clock = clock

    def export(
        self,
        chain_id: str,
        from_date: date | datetime,
        to_date: date | datetime,
        exported_by: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> dict[str, Any]:
        """
        Export every entry recorded within [from_date, to_date].

        The window is the smallest contiguous sequence range covering those
        entries, so a third party can replay it without gaps.

        Raises:
            ValidationError: malformed date range
            ChainNotFound: chain has no entries yet
            IntegrityViolation / SequenceGapDetected: window failed verification
            ExportCancelled: cancel was set
            ExportFailed: a read failed mid-export
        """
        start_time = _window_start(from_date)
        end_time = _window_end(to_date)
        if start_time > end_time:
            raise ValidationError("from_date must not be after to_date")

        chain = self._require_chain(chain_id)
        try:
            window = self._store.find_sequence_window(chain_id, start_time, end_time)
        except (StorageUnavailable, LedgerStoreError) as e:
            self._failed(chain_id, e)
            raise ExportFailed(f"Could not resolve export window for chain {chain_id!r}: {e}") from e

        time_range = {
            "from_time": Hasher.format_timestamp(start_time),
            "to_time": Hasher.format_timestamp(end_time),
        }

        if window is None:
            return self._empty_bundle(chain, time_range, exported_by)

        from_sequence, to_sequence = window
        # Entries appended after the chain snapshot are not part of this export
        to_sequence = min(to_sequence, chain.length - 1)
        if from_sequence > to_sequence:
            return self._empty_bundle(chain, time_range, exported_by)
        return self._export_window(chain, from_sequence, to_sequence, exported_by, cancel, time_range)

    def export_range(
        self,
        chain_id: str,
        from_sequence: int = 0,
        to_sequence: Optional[int] = None,
        exported_by: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> dict[str, Any]:
        """Export an explicit sequence window. Same guarantees as export()."""
        chain = self._require_chain(chain_id)
        if from_sequence < 0:
            raise ValidationError("from_sequence must be non-negative")
        last = chain.length - 1
        end = last if to_sequence is None else min(to_sequence, last)
        if end < from_sequence:
            raise ValidationError(
                f"Empty sequence window [{from_sequence}, {to_sequence}] on chain {chain_id!r}"
            )
        return self._export_window(chain, from_sequence, end, exported_by, cancel, {})

    def _require_chain(self, chain_id: str) -> LedgerChain:
        try:
            chain = self._store.get_chain(chain_id)
        except (StorageUnavailable, LedgerStoreError) as e:
            self._failed(chain_id, e)
            raise ExportFailed(f"Could not read chain {chain_id!r}: {e}") from e
        if chain is None:
            raise ChainNotFound(f"Chain {chain_id!r} has no entries")
        return chain

    def _export_window(
        self,
        chain: LedgerChain,
        start: int,
        end: int,
        exported_by: Optional[str],
        cancel: Optional[threading.Event],
        time_range: dict[str, str],
    ) -> dict[str, Any]:
        chain_id = chain.chain_id

        try:
            attestation = self._verifier.verify_window(chain, start, end)
            raise_for_result(attestation)

            anchor = None
            seed = GENESIS_HASH
            if start > 0:
                anchor_entry = self._store.get_entry(chain_id, start - 1)
                if anchor_entry is None:
                    raise ExportFailed(f"Anchor entry {start - 1} vanished during export")
                anchor = {"sequence": anchor_entry.sequence, "entry_hash": anchor_entry.entry_hash}
                seed = anchor_entry.entry_hash

            entries = self._read_window(chain_id, start, end, cancel)

        except IntegrityViolation as e:
            get_metrics().increment("exports_failed")
            logger.error(
                "Export aborted: window failed verification",
                chain_id=chain_id,
                from_sequence=start,
                to_sequence=end,
                defects=len(e.result.errors) if e.result else None,
            )
            raise
        except ExportFailed as e:
            self._failed(chain_id, e)
            raise
        except ExportCancelled:
            logger.info("Export cancelled", chain_id=chain_id, from_sequence=start, to_sequence=end)
            raise
        except (StorageUnavailable, LedgerStoreError) as e:
            self._failed(chain_id, e)
            raise ExportFailed(f"Read failed while exporting chain {chain_id!r}: {e}") from e

        check = replay(entries, chain_id, seed, start, end, chain)
        if not _same_outcome(check, attestation):
            error = ExportFailed(
                f"Entries of chain {chain_id!r} changed between verification and export"
            )
            self._failed(chain_id, error)
            raise error

        bundle = self._assemble(
            chain,
            range_={"from_sequence": start, "to_sequence": end, **time_range},
            anchor=anchor,
            entries=entries,
            attestation=attestation,
            exported_by=exported_by,
        )

        get_metrics().increment("exports_completed")
        logger.info(
            "Bundle exported",
            chain_id=chain_id,
            from_sequence=start,
            to_sequence=end,
            entry_count=len(entries),
            checksum=bundle["export_metadata"]["checksum"],
        )
        return bundle

    def _read_window(
        self,
        chain_id: str,
        start: int,
        end: int,
        cancel: Optional[threading.Event],
    ) -> list[LedgerEntry]:
        """Cooperative paged read of [start, end]."""
        entries: list[LedgerEntry] = []
        next_sequence = start
        while next_sequence <= end:
            if cancel is not None and cancel.is_set():
                raise ExportCancelled(f"Export of chain {chain_id!r} cancelled at sequence {next_sequence}")
            page = self._store.list_entries(
                chain_id, next_sequence, end, limit=self._config.export_page_size
            )
            if not page:
                break
            entries.extend(page)
            next_sequence = page[-1].sequence + 1
        return entries

    def _empty_bundle(
        self,
        chain: LedgerChain,
        time_range: dict[str, str],
        exported_by: Optional[str],
    ) -> dict[str, Any]:
        attestation = VerificationResult(
            chain_id=chain.chain_id,
            is_valid=True,
            from_sequence=0,
            to_sequence=None,
            verified_at=self._clock(),
        )
        bundle = self._assemble(
            chain,
            range_={"from_sequence": None, "to_sequence": None, **time_range},
            anchor=None,
            entries=[],
            attestation=attestation,
            exported_by=exported_by,
        )
        get_metrics().increment("exports_completed")
        logger.info("Empty window exported", chain_id=chain.chain_id, **time_range)
        return bundle

    def _assemble(
        self,
        chain: LedgerChain,
        range_: dict[str, Any],
        anchor: Optional[dict[str, Any]],
        entries: list[LedgerEntry],
        attestation: VerificationResult,
        exported_by: Optional[str],
    ) -> dict[str, Any]:
        bundle: dict[str, Any] = {
            "bundle_version": BUNDLE_VERSION,
            "chain": {
                "chain_id": chain.chain_id,
                "genesis_hash": chain.genesis_hash,
                "tip_hash": chain.tip_hash,
                "length": chain.length,
            },
            "range": range_,
            "anchor": anchor,
            "entries": [entry.model_dump(mode="json") for entry in entries],
            "attestation": attestation.model_dump(mode="json"),
            "export_metadata": {
                "exported_at": Hasher.format_timestamp(self._clock()),
                "exported_by": exported_by or self._config.exporter_id,
                "entry_count": len(entries),
                "canonicalization_version": Hasher.SERIALIZATION_VERSION,
                "hash_algorithm": HASH_ALGORITHM,
            },
        }

        try:
            checksum = bundle_checksum(bundle)
        except CanonicalSerializationError as e:
            raise ExportFailed(f"Bundle could not be canonicalized: {e}") from e

        bundle["export_metadata"].update(
            checksum=checksum,
            signature_algorithm=SIGNATURE_ALGORITHM,
            signature=self._signing.sign(checksum),
            public_key=self._signing.public_key,
        )
        return bundle

    def _failed(self, chain_id: str, error: Exception) -> None:
        get_metrics().increment("exports_failed")
        logger.error("Export failed", chain_id=chain_id, error=str(error))


# ============================================================
# OFFLINE VERIFICATION
# ============================================================

@dataclass
class BundleVerification:
    """Outcome of re-verifying a bundle from its own contents."""
    is_valid: bool
    chain_id: str
    entry_count: int
    checksum_valid: bool
    signature_valid: bool
    attestation_reproduced: bool
    trusted_key: bool
    replay: Optional[VerificationResult] = None
    problems: list[str] = field(default_factory=list)


def _parse_bundle(bundle: Any):
    if not isinstance(bundle, dict):
        raise BundleFormatError("Bundle must be a JSON object")
    missing = [name for name in _REQUIRED_SECTIONS if name not in bundle]
    if missing:
        raise BundleFormatError(f"Bundle is missing sections: {', '.join(missing)}")
    if bundle["bundle_version"] != BUNDLE_VERSION:
        raise BundleFormatError(f"Unsupported bundle version {bundle['bundle_version']!r}")

    metadata = bundle["export_metadata"]
    range_ = bundle["range"]
    if not isinstance(metadata, dict) or not isinstance(range_, dict):
        raise BundleFormatError("range and export_metadata must be objects")
    for name in ("checksum", "signature", "public_key"):
        if not isinstance(metadata.get(name), str):
            raise BundleFormatError(f"export_metadata.{name} is missing")
    if not isinstance(bundle["entries"], list):
        raise BundleFormatError("entries must be a list")

    try:
        chain = LedgerChain.model_validate(bundle["chain"])
        entries = [LedgerEntry.model_validate(e) for e in bundle["entries"]]
        attestation = VerificationResult.model_validate(bundle["attestation"])
    except pydantic.ValidationError as e:
        raise BundleFormatError(f"Bundle content is malformed: {e}") from e

    return chain, entries, attestation, metadata, range_


def verify_bundle(bundle: Any, trusted_public_key: Optional[str] = None) -> BundleVerification:
    """
    Re-verify a bundle using nothing but its own contents.

    Recomputes every entry hash from the anchor (or genesis), the checksum
    over the bundle body and the signature over the checksum, and checks
    that the recomputed verification reproduces the embedded attestation.

    Args:
        bundle: Parsed bundle JSON
        trusted_public_key: Key the bundle must be signed with. Without it,
            the embedded public_key is used, which proves integrity but not
            origin.

    Raises:
        BundleFormatError: bundle is structurally invalid
    """
    chain, entries, attestation, metadata, range_ = _parse_bundle(bundle)
    problems: list[str] = []

    try:
        checksum = bundle_checksum(bundle)
    except CanonicalSerializationError as e:
        raise BundleFormatError(f"Bundle cannot be canonicalized: {e}") from e
    checksum_valid = Hasher.constant_time_compare(checksum, metadata["checksum"])
    if not checksum_valid:
        problems.append("checksum does not match bundle contents")

    public_key = trusted_public_key or metadata["public_key"]
    signature_valid = Signer.verify(metadata["checksum"], metadata["signature"], public_key)
    if not signature_valid:
        problems.append("signature does not verify" + (" with the trusted key" if trusted_public_key else ""))

    if metadata.get("entry_count") != len(entries):
        problems.append(f"entry_count {metadata.get('entry_count')} but {len(entries)} entries present")

    start = range_.get("from_sequence")
    end = range_.get("to_sequence")
    result: Optional[VerificationResult] = None

    if start is None:
        attestation_reproduced = not entries and attestation.is_valid and attestation.total_entries == 0
        if entries:
            problems.append("entries present in a bundle with an empty window")
    else:
        anchor = bundle.get("anchor")
        if start == 0:
            seed: Optional[str] = GENESIS_HASH
        elif isinstance(anchor, dict) and anchor.get("sequence") == start - 1:
            seed = anchor.get("entry_hash")
        else:
            seed = None
            problems.append(f"anchor for sequence {start - 1} is missing")
        if seed is not None and not Hasher.is_hash(seed):
            raise BundleFormatError("anchor.entry_hash is not a hash")

        result = replay(entries, chain.chain_id, seed, start, end, chain)
        attestation_reproduced = _same_outcome(result, attestation)
        if not result.is_valid:
            problems.extend(d.message for d in result.errors)

    if not attestation_reproduced:
        problems.append("recomputed verification does not reproduce the attestation")

    is_valid = checksum_valid and signature_valid and attestation_reproduced and not problems
    return BundleVerification(
        is_valid=is_valid,
        chain_id=chain.chain_id,
        entry_count=len(entries),
        checksum_valid=checksum_valid,
        signature_valid=signature_valid,
        attestation_reproduced=attestation_reproduced,
        trusted_key=trusted_public_key is not None,
        replay=result,
        problems=problems,
    )
