"""Pydantic schemas for raw scanner findings and the per-scan batch handed to the deduplication engine."""

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Reusable severity levels for validation and type safety across schemas.
SeverityLevel = Literal["critical", "high", "medium", "low", "info"]

# Most severe first; index is used for threshold comparisons.
SEVERITY_ORDER: tuple[SeverityLevel, ...] = ("critical", "high", "medium", "low", "info")

ScannerType = Literal["sast", "sca", "secrets", "iac", "container"]

# Scanner classes identified by package; version lives on the instance.
PACKAGE_BASED_TYPES: frozenset[str] = frozenset({"sca", "container"})

_SCANNER_TYPE_ALIASES: dict[str, str] = {
    "secret": "secrets",
    "dependency": "sca",
    "dependencies": "sca",
    "image": "container",
}

# Severity aliases (case-insensitive) -> canonical level.
_SEVERITY_ALIASES: dict[str, SeverityLevel] = {
    "critical": "critical",
    "crit": "critical",
    "1": "critical",
    "high": "high",
    "2": "high",
    "medium": "medium",
    "med": "medium",
    "moderate": "medium",
    "3": "medium",
    "low": "low",
    "4": "low",
    "info": "info",
    "informational": "info",
    "informative": "info",
    "0": "info",
    "5": "info",
}


def normalize_severity(value: Any) -> SeverityLevel:
    """Map a scanner severity label to a canonical level; anything unrecognized is 'info'."""
    if value is None:
        return "info"
    normalized = str(value).strip().lower()
    return _SEVERITY_ALIASES.get(normalized, "info")


def severity_at_least(severity: str, threshold: str) -> bool:
    """True if severity is as severe as threshold or more."""
    try:
        return SEVERITY_ORDER.index(severity) <= SEVERITY_ORDER.index(threshold)
    except ValueError:
        return False


class FindingMetadata(BaseModel):
    """Scanner-specific metadata. Known keys are typed; anything else is kept as-is."""

    model_config = ConfigDict(extra="allow", frozen=True)

    package_name: str | None = None
    package_version: str | None = None
    fixed_version: str | None = None
    ecosystem: str | None = None
    secret_type: str | None = None
    entropy: float | None = None
    resource_type: str | None = None
    cloud_provider: str | None = None
    image_name: str | None = None


class RawFinding(BaseModel):
    """
    One finding as produced by a scanner adapter.

    Frozen: a finding is not modified while its batch is processed. Optional
    fields default to empty values so every finding can be fingerprinted.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    type: ScannerType = Field(..., description="Scanner class: sast, sca, secrets, iac or container.")
    rule_id: str = Field(default="", description="Scanner rule or advisory identifier.")
    title: str = Field(default="", description="Title as reported by the scanner.")
    description: str = Field(default="", description="Human-readable description.")
    severity: SeverityLevel = Field(default="info", description="Already-computed severity level.")
    file_path: str | None = Field(default=None, description="Affected file, for file-based classes.")
    line_start: int | None = Field(default=None, ge=0)
    line_end: int | None = Field(default=None, ge=0)
    cwe: list[str] = Field(default_factory=list, description="CWE identifiers, primary first.")
    confidence: float | None = Field(default=None, ge=0, le=1)
    scanner: str | None = Field(default=None, description="Name of the scanner (e.g. semgrep, osv).")
    category: str | None = None
    owasp: list[str] = Field(default_factory=list)
    cve: str | None = None
    metadata: FindingMetadata = Field(default_factory=FindingMetadata)

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        if isinstance(v, str):
            key = v.strip().lower()
            return _SCANNER_TYPE_ALIASES.get(key, key)
        return v

    @field_validator("severity", mode="before")
    @classmethod
    def normalize_severity_label(cls, v: Any) -> str:
        return normalize_severity(v)

    @field_validator("rule_id", "title", "description", mode="before")
    @classmethod
    def none_to_empty(cls, v: Any) -> Any:
        return "" if v is None else v

    @field_validator("cwe", "owasp", mode="before")
    @classmethod
    def coerce_str_list(cls, v: Any) -> Any:
        if v is None:
            return []
        if isinstance(v, str):
            return [v]
        return v

    @field_validator("metadata", mode="before")
    @classmethod
    def none_to_empty_metadata(cls, v: Any) -> Any:
        return {} if v is None else v

    @property
    def package_name(self) -> str | None:
        return self.metadata.package_name

    @property
    def package_version(self) -> str | None:
        return self.metadata.package_version

    @property
    def primary_cwe(self) -> str:
        """First non-blank CWE entry, trimmed; empty when there is none."""
        for entry in self.cwe:
            if entry and entry.strip():
                return entry.strip()
        return ""


class ScanBatch(BaseModel):
    """All raw findings of one completed scan plus the scan context."""

    scan_id: str = Field(..., min_length=1, max_length=64)
    workspace_id: str = Field(..., min_length=1, max_length=255)
    repository_id: str = Field(..., min_length=1, max_length=255)
    now: datetime = Field(default_factory=lambda: datetime.now(UTC))
    findings: list[RawFinding] = Field(default_factory=list)


class TitleContext(BaseModel):
    """What the AI title tier is told about a finding."""

    rule_id: str
    description: str
    scanner_type: str
    severity: str
    file_path: str | None = None
    cwe: str | None = None
    raw_title: str | None = None

    @classmethod
    def from_finding(cls, finding: RawFinding) -> "TitleContext":
        return cls(
            rule_id=finding.rule_id,
            description=finding.description,
            scanner_type=finding.type,
            severity=finding.severity,
            file_path=finding.file_path,
            cwe=finding.primary_cwe or None,
            raw_title=finding.title or None,
        )
