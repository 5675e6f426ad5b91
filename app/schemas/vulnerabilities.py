"""Response schemas for reading the unified catalog."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class UnifiedVulnerabilityOut(BaseModel):
    """One unified vulnerability with the number of instances recorded for it."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    fingerprint: str
    title: str
    description: str
    severity: str
    scanner_type: str
    repository_id: str
    workspace_id: str
    rule_id: str
    cwe: str | None = None
    status: Literal["open", "fixed"]
    file_path: str | None = None
    line_start: int | None = None
    first_detected_at: datetime
    last_seen_at: datetime
    resolved_at: datetime | None = None
    instance_count: int = Field(default=0, ge=0)


class VulnerabilityListResponse(BaseModel):
    items: list[UnifiedVulnerabilityOut]
    total: int = Field(..., ge=0)


class VulnerabilityInstanceOut(BaseModel):
    """One occurrence of a unified vulnerability in a scan."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    scan_id: str
    vulnerability_id: int
    scanner_type: str
    scanner: str | None = None
    file_path: str | None = None
    line_start: int | None = None
    line_end: int | None = None
    package_name: str | None = None
    package_version: str | None = None
    detected_at: datetime
