"""Result schemas for batch processing and auto-resolution."""

from pydantic import BaseModel, Field

from app.schemas.findings import RawFinding


class ProcessingStats(BaseModel):
    """Aggregate counters returned by process_batch."""

    unified_created: int = Field(default=0, ge=0, description="New unified vulnerabilities inserted by this batch.")
    unified_updated: int = Field(default=0, ge=0, description="Existing unified vulnerabilities whose last_seen_at was bumped.")
    unified_adopted: int = Field(
        default=0,
        ge=0,
        description="New fingerprints that a concurrent batch created first; the existing row was adopted.",
    )
    unified_reopened: int = Field(default=0, ge=0, description="Fixed vulnerabilities set back to open (REOPEN_ON_REDISCOVERY).")
    unified_failed: int = Field(default=0, ge=0, description="Unified rows that could not be written.")
    instances_created: int = Field(default=0, ge=0)
    instances_already_existed: int = Field(
        default=0,
        ge=0,
        description="Instances rejected by the unique key, i.e. already written by an earlier run of this scan.",
    )
    instances_skipped_duplicate: int = Field(
        default=0,
        ge=0,
        description="Findings whose instance key repeated within this batch.",
    )
    instances_failed: int = Field(default=0, ge=0)
    findings_unresolved: int = Field(
        default=0,
        ge=0,
        description="Findings excluded because no fingerprint or unified id could be resolved.",
    )
    titles_from_ai: int = Field(default=0, ge=0)
    titles_from_fallback: int = Field(default=0, ge=0, description="Titles from the deterministic tier.")
    titles_from_literal: int = Field(default=0, ge=0)
    title_errors: int = Field(default=0, ge=0, description="Title tier failures that were recovered by a lower tier.")


class ResolutionResult(BaseModel):
    """Outcome of resolve_vanished."""

    fixed_count: int = Field(default=0, ge=0)
    previous_scan_id: str | None = Field(
        default=None,
        description="The completed scan that was diffed against; None when there was none.",
    )


class ScanFindingsRequest(BaseModel):
    """Body of POST /scans/{scan_id}/findings."""

    workspace_id: str = Field(..., min_length=1, max_length=255)
    repository_id: str = Field(..., min_length=1, max_length=255)
    findings: list[RawFinding] = Field(default_factory=list, max_length=10_000)


class ResolveRequest(BaseModel):
    """Body of POST /scans/{scan_id}/resolve."""

    repository_id: str = Field(..., min_length=1, max_length=255)
