"""Read endpoints for the unified catalog."""

from typing import Annotated, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.schemas.vulnerabilities import (
    UnifiedVulnerabilityOut,
    VulnerabilityInstanceOut,
    VulnerabilityListResponse,
)
from app.services.store import VulnerabilityStore

router = APIRouter()


@router.get("", response_model=VulnerabilityListResponse)
def list_vulnerabilities(
    db: Annotated[Session, Depends(get_db)],
    repository_id: Annotated[str | None, Query(max_length=255)] = None,
    status: Annotated[Literal["open", "fixed"] | None, Query()] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> VulnerabilityListResponse:
    """
    Unified vulnerabilities, most recently seen first, each with its instance count.

    Filter by repository and status; paginate with limit/offset. total is the
    number of rows matching the filters.
    """
    rows, total = VulnerabilityStore(db).list_unified(repository_id, status, limit, offset)
    items = [
        UnifiedVulnerabilityOut.model_validate(vuln).model_copy(update={"instance_count": count})
        for vuln, count in rows
    ]
    return VulnerabilityListResponse(items=items, total=total)


@router.get("/{vulnerability_id}/instances", response_model=list[VulnerabilityInstanceOut])
def list_vulnerability_instances(
    vulnerability_id: int,
    db: Annotated[Session, Depends(get_db)],
) -> list[VulnerabilityInstanceOut]:
    """Every recorded occurrence of one unified vulnerability, newest first."""
    store = VulnerabilityStore(db)
    if store.get_unified(vulnerability_id) is None:
        raise HTTPException(status_code=404, detail="Vulnerability not found.")
    return [VulnerabilityInstanceOut.model_validate(i) for i in store.list_instances(vulnerability_id)]
