"""
Observability - Logging, Metrics, and Health

Everything the ledger emits about itself:
- Structured logs carrying the request ID and chain ID of the current call
- Per-request timing middleware
- In-process counters for the append, verify, export and side-effect paths
- Health probes (store connectivity, shallow chain integrity)

Configuration:
- AUDITCHAIN_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- AUDITCHAIN_LOG_FORMAT: json, text (default: json in production)
- AUDITCHAIN_PRODUCTION: Enable production mode

Usage:
    from auditchain.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Entry appended", chain_id=chain_id, sequence=seq)
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Bound by RequestContextMiddleware, read by the formatters
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
chain_id_var: ContextVar[str] = ContextVar("chain_id", default="")

_TRUTHY = ("1", "true", "yes")


# ============================================================
# CONFIGURATION
# ============================================================

def is_production() -> bool:
    return os.environ.get("AUDITCHAIN_PRODUCTION", "").lower() in _TRUTHY


def _log_level_from_env() -> int:
    name = os.environ.get("AUDITCHAIN_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _json_logs_enabled() -> bool:
    fmt = os.environ.get("AUDITCHAIN_LOG_FORMAT", "").lower()
    if fmt in ("json", "text"):
        return fmt == "json"
    return is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

# Attributes every LogRecord has; anything else came from ContextLogger kwargs
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "taskName"}


def _fields_of(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line, for log shippers.

        {"timestamp": "...", "level": "WARNING", "logger": "auditchain.core.append",
         "message": "Append gave up on contended chain", "request_id": "1f3a9c2e",
         "chain_id": "team_42", "attempts": 10, "elapsed_ms": 5003.1}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name, var in (("request_id", request_id_var), ("chain_id", chain_id_var)):
            bound = var.get()
            if bound:
                entry[name] = bound

        entry.update({key: _jsonable(value) for key, value in _fields_of(record).items()})
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class TextFormatter(logging.Formatter):
    """Single-line, key=value output for local development."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S.%f")[:-3]
        request_id = request_id_var.get()
        scope = f"[{request_id}] " if request_id else ""

        line = f"{stamp} {record.levelname:<7} {scope}{record.name}: {record.getMessage()}"
        fields = _fields_of(record)
        if fields:
            line += " | " + " ".join(f"{key}={fields[key]}" for key in sorted(fields))
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Logger whose keyword arguments become structured fields.

        logger.warning("Append contended", chain_id=chain_id, attempt=3)
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        fields = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            fields[key] = kwargs.pop(key)
        kwargs["extra"] = fields
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """Structured logger for a module (pass __name__)."""
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Install the single stdout handler on the root logger.

    Idempotent: existing root handlers are replaced, not stacked.
    """
    level = _log_level_from_env()
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if _json_logs_enabled() else TextFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    # Per-request lines come from RequestContextMiddleware instead
    for noisy in ("uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

def _chain_id_from_path(path: str) -> str:
    parts = path.strip("/").split("/")
    if len(parts) > 2 and parts[0] == "api" and parts[1] == "chains":
        return parts[2]
    return ""


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds request_id and chain_id for every log line emitted while a
    request is handled, and records one timing line plus request metrics.

    X-Request-ID is honoured when the caller sends one and always echoed.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        tokens = (
            request_id_var.set(request_id),
            chain_id_var.set(_chain_id_from_path(request.url.path)),
        )
        logger = get_logger("auditchain.request")
        label = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception as e:
                elapsed_ms = (time.perf_counter() - started) * 1000
                get_metrics().record_request(elapsed_ms, success=False)
                logger.exception(f"{label} -> unhandled", duration_ms=round(elapsed_ms, 2), error=str(e))
                raise

            elapsed_ms = (time.perf_counter() - started) * 1000
            get_metrics().record_request(elapsed_ms, success=response.status_code < 500)
            logger.log(
                logging.INFO if response.status_code < 400 else logging.WARNING,
                f"{label} -> {response.status_code}",
                status_code=response.status_code,
                duration_ms=round(elapsed_ms, 2),
            )
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(tokens[0])
            chain_id_var.reset(tokens[1])


# ============================================================
# METRICS
# ============================================================

_MAX_SAMPLES = 1000

# Counter name -> summary section
_SECTIONS = {
    "appends": (
        "entries_appended",
        "idempotent_replays",
        "contention_retries",
        "contention_failures",
        "storage_failures",
        "degraded_appends",
    ),
    "verification": ("verifications_run", "integrity_failures"),
    "exports": ("exports_completed", "exports_failed"),
    "side_effects": ("side_effects_delivered", "side_effects_failed", "side_effects_dropped"),
    "http": ("requests_total", "requests_failed"),
}


def _percentile(samples: list, p: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    return round(ordered[min(int(len(ordered) * p), len(ordered) - 1)], 3)


@dataclass
class MetricsCollector:
    """
    Process-local counters and latency samples.

    Counters are plain attributes bumped through increment(); latency
    lists keep the most recent samples only.
    """

    entries_appended: int = 0
    idempotent_replays: int = 0
    contention_retries: int = 0
    contention_failures: int = 0
    storage_failures: int = 0
    degraded_appends: int = 0

    verifications_run: int = 0
    integrity_failures: int = 0
    exports_completed: int = 0
    exports_failed: int = 0

    side_effects_delivered: int = 0
    side_effects_failed: int = 0
    side_effects_dropped: int = 0

    requests_total: int = 0
    requests_failed: int = 0

    append_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False)

    def increment(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def _sample(self, samples: list, value: float) -> None:
        samples.append(value)
        del samples[:-_MAX_SAMPLES]

    def record_append(self, latency_ms: float) -> None:
        with self._lock:
            self.entries_appended += 1
            self._sample(self.append_latencies_ms, latency_ms)

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            self.requests_failed += 0 if success else 1
            self._sample(self.request_latencies_ms, latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        """Counters grouped by path, plus latency percentiles."""
        with self._lock:
            summary: Dict[str, Any] = {
                section: {name: getattr(self, name) for name in names}
                for section, names in _SECTIONS.items()
            }
            summary["latency_ms"] = {
                "append_p50": _percentile(self.append_latencies_ms, 0.50),
                "append_p95": _percentile(self.append_latencies_ms, 0.95),
                "append_p99": _percentile(self.append_latencies_ms, 0.99),
                "request_p50": _percentile(self.request_latencies_ms, 0.50),
                "request_p95": _percentile(self.request_latencies_ms, 0.95),
            }
            return summary

    def reset(self) -> None:
        """Zero everything (tests)."""
        fresh = MetricsCollector()
        with self._lock:
            for name in self.__dataclass_fields__:
                if name != "_lock":
                    setattr(self, name, getattr(fresh, name))


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """The process-wide collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(store=None, verifier=None, chain_ids: Optional[list] = None) -> HealthStatus:
    """
    Probe the ledger.

    Args:
        store: LedgerStore instance (connectivity)
        verifier: ChainVerifier instance (shallow integrity per chain)
        chain_ids: Chains to check; defaults to every chain the store knows

    Deep replays belong to /verify, never to a health probe.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if store is not None:
        try:
            store.ping()
            chains = store.list_chains()
        except Exception as e:
            checks["ledger_store"] = {"status": "unhealthy", "error": str(e)}
        else:
            checks["ledger_store"] = {
                "status": "healthy",
                "backend": type(store).__name__,
                "chain_count": len(chains),
            }
            if chain_ids is None:
                chain_ids = [c.chain_id for c in chains]

    if verifier is not None and chain_ids:
        try:
            invalid = [cid for cid in chain_ids if not verifier.integrity(cid).is_valid]
        except Exception as e:
            checks["chain_integrity"] = {"status": "unhealthy", "error": str(e)}
        else:
            checks["chain_integrity"] = {
                "status": "unhealthy" if invalid else "healthy",
                "chains_checked": len(chain_ids),
                "invalid_chains": invalid,
            }

    return HealthStatus(
        healthy=all(check["status"] == "healthy" for check in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
