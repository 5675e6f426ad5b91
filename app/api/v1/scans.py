"""Scan endpoints: deduplicate a completed scan's findings, then auto-resolve against the previous scan."""

import logging
from datetime import datetime, timezone
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Path
from sqlalchemy.orm import Session

from app.core.config import Settings, get_settings
from app.core.database import get_db
from app.schemas.findings import ScanBatch
from app.schemas.processing import (
    ProcessingStats,
    ResolutionResult,
    ResolveRequest,
    ScanFindingsRequest,
)
from app.services.auto_resolution import resolve_vanished
from app.services.deduplication import VulnerabilityLookupError, process_batch
from app.services.store import VulnerabilityStore
from app.services.title_generator import OllamaTitleGenerator, get_title_generator

logger = logging.getLogger(__name__)

router = APIRouter()

ScanId = Annotated[str, Path(min_length=1, max_length=64)]


@router.post("/{scan_id}/findings", response_model=ProcessingStats)
async def submit_findings(
    scan_id: ScanId,
    body: ScanFindingsRequest,
    db: Annotated[Session, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
    title_generator: Annotated[OllamaTitleGenerator | None, Depends(get_title_generator)],
) -> ProcessingStats:
    """
    Deduplicate the findings of one completed scan into the unified catalog.

    Safe to retry with the same scan id and findings: nothing is duplicated and the
    response reports the replayed rows as already existing. The scan is recorded as
    completed so a later resolve call can diff against it.

    Returns 503 when existing vulnerabilities cannot be looked up.
    """
    store = VulnerabilityStore(db)
    now = datetime.now(timezone.utc)
    batch = ScanBatch(
        scan_id=scan_id,
        workspace_id=body.workspace_id,
        repository_id=body.repository_id,
        now=now,
        findings=body.findings,
    )
    try:
        stats = await process_batch(batch, store, title_generator, settings)
    except VulnerabilityLookupError as e:
        raise HTTPException(status_code=503, detail=e.message) from e
    store.complete_scan(scan_id, body.repository_id, body.workspace_id, now)
    return stats


@router.post("/{scan_id}/resolve", response_model=ResolutionResult)
def resolve_scan(
    scan_id: ScanId,
    body: ResolveRequest,
    db: Annotated[Session, Depends(get_db)],
) -> ResolutionResult:
    """Mark vulnerabilities fixed that were in the previous completed scan but are absent from this one."""
    return resolve_vanished(VulnerabilityStore(db), body.repository_id, scan_id)
