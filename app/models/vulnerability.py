"""ORM models for the unified vulnerability catalog and its per-scan instances."""

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)

from app.models.base import Base, JSONType


class UnifiedVulnerability(Base):
    """
    One row per logical vulnerability (fingerprint).

    Location fields hold the first sighting for list views only; the instances
    table is the source of truth for where the vulnerability was seen.
    """

    __tablename__ = "vulnerabilities_unified"
    __table_args__ = (
        CheckConstraint(
            "status IN ('open', 'fixed')",
            name="vulnerabilities_unified_status_check",
        ),
        CheckConstraint(
            "severity IN ('critical', 'high', 'medium', 'low', 'info')",
            name="vulnerabilities_unified_severity_check",
        ),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    fingerprint = Column(String(64), nullable=False, unique=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=False)
    severity = Column(String(32), nullable=False, index=True)
    scanner_type = Column(String(32), nullable=False)
    repository_id = Column(String(255), nullable=False, index=True)
    workspace_id = Column(String(255), nullable=False, index=True)
    rule_id = Column(String(512), nullable=False)
    cwe = Column(String(64), nullable=True)
    status = Column(String(16), nullable=False, default="open", index=True)
    file_path = Column(String(2048), nullable=True)
    line_start = Column(Integer, nullable=True)
    line_end = Column(Integer, nullable=True)
    confidence = Column(Float, nullable=True)
    scanner_metadata = Column(JSONType, nullable=True)
    first_detected_at = Column(DateTime(timezone=True), nullable=False)
    last_seen_at = Column(DateTime(timezone=True), nullable=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )


class VulnerabilityInstance(Base):
    """
    One occurrence of a unified vulnerability in one scan (file:line or package:version).

    Append-only. instance_key hashes (scan_id, vulnerability_id, location) and is unique,
    so replaying a batch cannot duplicate rows.
    """

    __tablename__ = "vulnerability_instances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instance_key = Column(String(64), nullable=False, unique=True)
    scan_id = Column(String(64), nullable=False, index=True)
    vulnerability_id = Column(
        Integer,
        ForeignKey("vulnerabilities_unified.id"),
        nullable=False,
        index=True,
    )
    scanner_type = Column(String(32), nullable=False)
    scanner = Column(String(255), nullable=True)
    file_path = Column(String(2048), nullable=True)
    line_start = Column(Integer, nullable=True)
    line_end = Column(Integer, nullable=True)
    package_name = Column(String(1024), nullable=True)
    package_version = Column(String(255), nullable=True)
    detected_at = Column(DateTime(timezone=True), nullable=False)
    raw_finding = Column(JSONType, nullable=True)
