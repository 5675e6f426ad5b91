"""Shared builders for tests: findings, batches and an in-memory catalog database."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import Base, Scan
from app.schemas.findings import RawFinding, ScanBatch

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_session_factory() -> sessionmaker:
    """Fresh in-memory SQLite database with the catalog schema; one connection shared by all sessions."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def make_session() -> Session:
    return make_session_factory()()


def make_finding(**overrides: Any) -> RawFinding:
    """A SAST SQL injection finding in src/db.py:10, with any field overridden."""
    data: dict[str, Any] = {
        "type": "sast",
        "rule_id": "sql-injection",
        "title": "SQL injection via string concatenation",
        "description": "User input reaches a SQL query without parameterization.",
        "severity": "high",
        "file_path": "src/db.py",
        "line_start": 10,
        "line_end": 12,
        "cwe": ["CWE-89"],
        "scanner": "semgrep",
    }
    data.update(overrides)
    return RawFinding.model_validate(data)


def make_sca_finding(package_version: str = "4.17.20", **overrides: Any) -> RawFinding:
    """An SCA lodash advisory at the given version."""
    data: dict[str, Any] = {
        "type": "sca",
        "rule_id": "CVE-2021-1234",
        "title": "Prototype pollution in lodash",
        "description": "lodash before 4.17.21 is vulnerable to prototype pollution.",
        "severity": "critical",
        "scanner": "osv",
        "cve": "CVE-2021-1234",
        "metadata": {
            "package_name": "lodash",
            "package_version": package_version,
            "fixed_version": "4.17.21",
            "ecosystem": "npm",
        },
    }
    data.update(overrides)
    return RawFinding.model_validate(data)


def make_batch(
    findings: list[RawFinding],
    scan_id: str = "scan-1",
    repository_id: str = "R1",
    now: datetime = NOW,
) -> ScanBatch:
    return ScanBatch(
        scan_id=scan_id,
        workspace_id="W1",
        repository_id=repository_id,
        now=now,
        findings=findings,
    )


def add_scan(
    session: Session,
    scan_id: str,
    created_at: datetime,
    repository_id: str = "R1",
    status: str = "completed",
) -> Scan:
    scan = Scan(
        id=scan_id,
        repository_id=repository_id,
        workspace_id="W1",
        status=status,
        created_at=created_at,
        completed_at=created_at if status == "completed" else None,
    )
    session.add(scan)
    session.commit()
    return scan
