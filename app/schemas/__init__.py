"""Pydantic schemas for request/response validation."""

from app.schemas.findings import (
    RawFinding,
    ScanBatch,
    ScannerType,
    SeverityLevel,
    TitleContext,
)
from app.schemas.health import HealthResponse
from app.schemas.processing import (
    ProcessingStats,
    ResolutionResult,
    ResolveRequest,
    ScanFindingsRequest,
)
from app.schemas.vulnerabilities import (
    UnifiedVulnerabilityOut,
    VulnerabilityInstanceOut,
    VulnerabilityListResponse,
)

__all__ = [
    "HealthResponse",
    "ProcessingStats",
    "RawFinding",
    "ResolutionResult",
    "ResolveRequest",
    "ScanBatch",
    "ScanFindingsRequest",
    "ScannerType",
    "SeverityLevel",
    "TitleContext",
    "UnifiedVulnerabilityOut",
    "VulnerabilityInstanceOut",
    "VulnerabilityListResponse",
]
