"""
API Routes for the Audit Ledger

Command-style endpoints (no PATCH, no PUT, no DELETE):
- POST /api/chains/{chain_id}/entries      - Append an audit event
- POST /api/chains/{chain_id}/export       - Export a compliance bundle

Query endpoints (snapshot reads, never block appends):
- GET /api/chains                          - List chain headers
- GET /api/chains/{chain_id}               - Chain header
- GET /api/chains/{chain_id}/entries       - Browse entries by sequence
- GET /api/chains/{chain_id}/entries/{seq} - One entry
- GET /api/chains/{chain_id}/integrity     - Shallow tip-consistency check
- GET /api/chains/{chain_id}/verify        - Deep (full or ranged) replay

Endpoints are plain ``def``: the append loop sleeps between retries and
the stores do blocking I/O, so they run in the threadpool.
"""

import json
from datetime import date, datetime
from typing import Any, Optional

from fastapi import APIRouter, Path, Query, Request, status
from fastapi.responses import Response
from pydantic import BaseModel, Field

from ..core import ChainNotFound, Hasher
from ..schemas import (
    AppendReceipt,
    Criticality,
    IntegrityStatus,
    LedgerChain,
    LedgerEntry,
    VerificationResult,
)
from ..schemas.events import CHAIN_ID_PATTERN
from ..services import LedgerServices


router = APIRouter(prefix="/api/chains", tags=["Ledger"])

ChainId = Path(..., pattern=CHAIN_ID_PATTERN, description="Tenant/team chain identifier")

MAX_PAGE_SIZE = 1000


# ============================================================
# Request Models
# ============================================================

class AppendRequest(BaseModel):
    """An audit event as submitted over HTTP. chain_id comes from the path."""
    event_type: str
    resource_type: str
    resource_id: str
    actor_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    criticality: Optional[Criticality] = None
    occurred_at: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    source_event_id: Optional[str] = None
    corrects_sequence: Optional[int] = None


class ExportRequest(BaseModel):
    """Date-bounded export. Both dates are inclusive whole UTC days."""
    from_date: date
    to_date: date
    exported_by: Optional[str] = Field(None, max_length=256)


# ============================================================
# Helpers
# ============================================================

def get_services(request: Request) -> LedgerServices:
    """Get the wired ledger services from app state."""
    return request.app.state.services


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.client.host if request.client else None


# ============================================================
# Commands
# ============================================================

@router.post("/{chain_id}/entries", response_model=AppendReceipt, status_code=status.HTTP_201_CREATED)
def append_entry(request: Request, body: AppendRequest, chain_id: str = ChainId):
    """
    Append one audit event to a chain.

    Uses the strict path regardless of criticality: an HTTP caller always
    learns whether the entry was committed.

    Errors: 422 validation, 409 contention (retryable, Retry-After),
    503 unavailable (retryable, Retry-After).
    """
    services = get_services(request)
    event = {
        **body.model_dump(exclude_none=True),
        "chain_id": chain_id,
        "ip_address": _client_ip(request),
        "user_agent": request.headers.get("User-Agent"),
    }
    entry = services.recorder.append(event)
    return AppendReceipt.from_entry(entry)


@router.post("/{chain_id}/export")
def export_bundle(request: Request, body: ExportRequest, chain_id: str = ChainId):
    """
    Export entries recorded between from_date and to_date as a signed bundle.

    The window is verified immediately before export. A chain that fails
    verification is never exported (409).
    """
    services = get_services(request)
    bundle = services.bundler.export(
        chain_id,
        body.from_date,
        body.to_date,
        exported_by=body.exported_by,
    )

    filename = f"audit-{chain_id}-{body.from_date.isoformat()}-{body.to_date.isoformat()}.json"
    return Response(
        content=_dump_bundle(bundle),
        media_type="application/json",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Bundle-Checksum": bundle["export_metadata"]["checksum"],
        },
    )


def _dump_bundle(bundle: dict[str, Any]) -> str:
    return json.dumps(bundle, indent=2, sort_keys=True)


# ============================================================
# Queries
# ============================================================

@router.get("", response_model=list[LedgerChain])
def list_chains(request: Request):
    return get_services(request).store.list_chains()


@router.get("/{chain_id}", response_model=LedgerChain)
def get_chain(request: Request, chain_id: str = ChainId):
    return get_services(request).engine.get_chain(chain_id)


@router.get("/{chain_id}/entries", response_model=list[LedgerEntry])
def list_entries(
    request: Request,
    chain_id: str = ChainId,
    from_sequence: int = Query(0, ge=0),
    to_sequence: Optional[int] = Query(None, ge=0),
    limit: int = Query(100, ge=1, le=MAX_PAGE_SIZE),
):
    """Entries in ascending sequence order."""
    engine = get_services(request).engine
    engine.get_chain(chain_id)  # 404 for unknown chains
    return engine.list_entries(chain_id, from_sequence, to_sequence, limit)


@router.get("/{chain_id}/entries/{sequence}", response_model=LedgerEntry)
def get_entry(request: Request, chain_id: str = ChainId, sequence: int = Path(..., ge=0)):
    entry = get_services(request).engine.get_entry(chain_id, sequence)
    if entry is None:
        raise ChainNotFound(f"Chain {chain_id!r} has no entry {sequence}")
    return entry


@router.get("/{chain_id}/integrity", response_model=IntegrityStatus)
def get_integrity(request: Request, chain_id: str = ChainId):
    """
    Cheap tip-consistency check.

    Compares the chain header with the stored entries without replaying.
    Use /verify for a full replay.
    """
    return get_services(request).verifier.integrity(chain_id)


@router.get("/{chain_id}/verify", response_model=VerificationResult)
def verify_chain(
    request: Request,
    chain_id: str = ChainId,
    from_sequence: Optional[int] = Query(None, ge=0),
    to_sequence: Optional[int] = Query(None, ge=0),
):
    """
    Deep replay of the chain or a sub-range.

    Always 200: defects are reported in the body (is_valid, errors), since
    compliance review needs the complete list, not a status code.
    """
    return get_services(request).verifier.verify(chain_id, from_sequence, to_sequence)


@router.get("/{chain_id}/entries/{sequence}/hash")
def recompute_entry_hash(request: Request, chain_id: str = ChainId, sequence: int = Path(..., ge=0)):
    """Stored and recomputed hash of one entry (for spot checks by auditors)."""
    entry = get_services(request).engine.get_entry(chain_id, sequence)
    if entry is None:
        raise ChainNotFound(f"Chain {chain_id!r} has no entry {sequence}")
    return {
        "sequence": entry.sequence,
        "prev_hash": entry.prev_hash,
        "entry_hash": entry.entry_hash,
        "matches": Hasher.verify_entry(entry.canonical_payload, entry.prev_hash, entry.sequence, entry.entry_hash),
    }
