"""
Ledger Configuration

Tunables for the append loop, normalizer, idempotency cache and exporter.

CONFIGURATION:
- AUDITCHAIN_APPEND_MAX_ATTEMPTS: Optimistic append attempts per call (default: 10)
- AUDITCHAIN_APPEND_DEADLINE_SECONDS: Overall budget for one append call (default: 5.0)
- AUDITCHAIN_APPEND_BACKOFF_MS: Base backoff between attempts (default: 5)
- AUDITCHAIN_APPEND_MAX_BACKOFF_MS: Backoff ceiling (default: 200)
- AUDITCHAIN_METADATA_MAX_BYTES: Bound on the stored metadata copy (default: 8192)
- AUDITCHAIN_IDEMPOTENCY_CACHE_SIZE: Entries kept in the fast-path cache (default: 10000)
- AUDITCHAIN_IDEMPOTENCY_CACHE_TTL_SECONDS: Cache entry lifetime (default: 3600)
- AUDITCHAIN_EXPORT_PAGE_SIZE: Entries read per page during export (default: 500)
- AUDITCHAIN_EXPORTER_ID: Exporter identity when the caller gives none (default: system)
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class LedgerConfig:
    """Configuration for the append engine, normalizer and exporter."""
    append_max_attempts: int = 10
    append_deadline_seconds: float = 5.0
    append_backoff_ms: float = 5.0
    append_max_backoff_ms: float = 200.0
    metadata_max_bytes: int = 8192
    idempotency_cache_size: int = 10_000
    idempotency_cache_ttl_seconds: float = 3600.0
    export_page_size: int = 500
    exporter_id: str = "system"

    def __post_init__(self):
        if self.append_max_attempts < 1:
            raise ValueError("append_max_attempts must be at least 1")
        if self.append_deadline_seconds <= 0:
            raise ValueError("append_deadline_seconds must be positive")
        if self.metadata_max_bytes < 64:
            raise ValueError("metadata_max_bytes must be at least 64")
        if self.export_page_size < 1:
            raise ValueError("export_page_size must be at least 1")

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        """Load configuration from environment variables."""
        return cls(
            append_max_attempts=int(os.environ.get("AUDITCHAIN_APPEND_MAX_ATTEMPTS", "10")),
            append_deadline_seconds=float(os.environ.get("AUDITCHAIN_APPEND_DEADLINE_SECONDS", "5.0")),
            append_backoff_ms=float(os.environ.get("AUDITCHAIN_APPEND_BACKOFF_MS", "5")),
            append_max_backoff_ms=float(os.environ.get("AUDITCHAIN_APPEND_MAX_BACKOFF_MS", "200")),
            metadata_max_bytes=int(os.environ.get("AUDITCHAIN_METADATA_MAX_BYTES", "8192")),
            idempotency_cache_size=int(os.environ.get("AUDITCHAIN_IDEMPOTENCY_CACHE_SIZE", "10000")),
            idempotency_cache_ttl_seconds=float(
                os.environ.get("AUDITCHAIN_IDEMPOTENCY_CACHE_TTL_SECONDS", "3600")
            ),
            export_page_size=int(os.environ.get("AUDITCHAIN_EXPORT_PAGE_SIZE", "500")),
            exporter_id=os.environ.get("AUDITCHAIN_EXPORTER_ID", "system"),
        )
