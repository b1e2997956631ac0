# Core ledger services
from .errors import (
    LedgerError,
    ValidationError,
    ContentionError,
    StorageUnavailable,
    IntegrityViolation,
    SequenceGapDetected,
    ExportFailed,
    ExportCancelled,
    ChainNotFound,
    LedgerStoreError,
    SequenceConflict,
    DuplicateIdempotencyKey,
)
from .hasher import Hasher, CanonicalSerializationError, GENESIS_HASH, HASH_ALGORITHM
from .config import LedgerConfig
from .cache import TTLCache
from .normalizer import EventNormalizer, TRUNCATION_MARKER
from .append import ChainAppendEngine
from .verifier import ChainVerifier, replay, raise_for_result
from .signer import Signer, SIGNATURE_ALGORITHM
from .signing_service import SigningService, get_signing_service
from .bundler import (
    BUNDLE_VERSION,
    BundleFormatError,
    BundleVerification,
    ExportBundler,
    bundle_checksum,
    verify_bundle,
)
from .dispatch import DispatchConfig, SideEffectDispatcher
from .recorder import AuditRecorder

__all__ = [
    "LedgerError",
    "ValidationError",
    "ContentionError",
    "StorageUnavailable",
    "IntegrityViolation",
    "SequenceGapDetected",
    "ExportFailed",
    "ExportCancelled",
    "ChainNotFound",
    "LedgerStoreError",
    "SequenceConflict",
    "DuplicateIdempotencyKey",
    "Hasher",
    "CanonicalSerializationError",
    "GENESIS_HASH",
    "HASH_ALGORITHM",
    "LedgerConfig",
    "TTLCache",
    "EventNormalizer",
    "TRUNCATION_MARKER",
    "ChainAppendEngine",
    "ChainVerifier",
    "replay",
    "raise_for_result",
    "Signer",
    "SIGNATURE_ALGORITHM",
    "SigningService",
    "get_signing_service",
    "BUNDLE_VERSION",
    "BundleFormatError",
    "BundleVerification",
    "ExportBundler",
    "bundle_checksum",
    "verify_bundle",
    "DispatchConfig",
    "SideEffectDispatcher",
    "AuditRecorder",
]
