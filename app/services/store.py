"""Persistence for the unified catalog: batched lookups, bulk writes with per-row fallback.

Every write method commits on success and rolls the session back before
re-raising on failure, so a failed bulk write leaves the session usable for the
per-row replay. Uniqueness on fingerprint and instance_key is enforced by the
database; a violation surfaces as DuplicateKeyError.
"""

from collections.abc import Iterable, Iterator, Sequence
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.models import Scan, UnifiedVulnerability, VulnerabilityInstance

# PostgreSQL SQLSTATE for unique_violation.
UNIQUE_VIOLATION = "23505"

# Upper bound for values in one IN (...) clause.
LOOKUP_CHUNK_SIZE = 500

T = TypeVar("T")


class DuplicateKeyError(Exception):
    """Raised when an insert hits a unique constraint (fingerprint or instance_key)."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


def is_unique_violation(error: IntegrityError) -> bool:
    """True for unique-constraint violations (PostgreSQL 23505 or SQLite's UNIQUE message)."""
    orig = getattr(error, "orig", None)
    if getattr(orig, "pgcode", None) == UNIQUE_VIOLATION:
        return True
    return "unique" in str(orig if orig is not None else error).lower()


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class VulnerabilityStore:
    """Store contract used by the deduplication engine, backed by a SQLAlchemy session."""

    def __init__(self, session: Session) -> None:
        self.session = session

    # -- unified vulnerabilities --------------------------------------------

    def fetch_unified_ids(self, fingerprints: Iterable[str]) -> dict[str, int]:
        """Return fingerprint -> id for the fingerprints that already exist."""
        unique = sorted(set(fingerprints))
        found: dict[str, int] = {}
        for chunk in chunked(unique, LOOKUP_CHUNK_SIZE):
            rows = self.session.execute(
                select(UnifiedVulnerability.fingerprint, UnifiedVulnerability.id).where(
                    UnifiedVulnerability.fingerprint.in_(chunk)
                )
            ).all()
            found.update({fp: vid for fp, vid in rows})
        return found

    def get_unified_id(self, fingerprint: str) -> int | None:
        return self.session.execute(
            select(UnifiedVulnerability.id).where(UnifiedVulnerability.fingerprint == fingerprint)
        ).scalar_one_or_none()

    def insert_unified_batch(self, rows: Sequence[dict[str, Any]]) -> dict[str, int]:
        """Insert all rows in one transaction; return fingerprint -> id. Raises on any failure."""
        objs = [UnifiedVulnerability(**row) for row in rows]
        try:
            self.session.add_all(objs)
            self.session.flush()
            created = {obj.fingerprint: obj.id for obj in objs}
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return created

    def insert_unified(self, row: dict[str, Any]) -> int:
        """Insert one row and return its id. Raises DuplicateKeyError if the fingerprint exists."""
        obj = UnifiedVulnerability(**row)
        try:
            self.session.add(obj)
            self.session.flush()
            new_id = obj.id
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            if is_unique_violation(e):
                raise DuplicateKeyError(
                    f"Unified vulnerability {row.get('fingerprint')} already exists.", cause=e
                ) from e
            raise
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return new_id

    def touch_unified(self, fingerprints: Sequence[str], now: datetime) -> int:
        """
        Set last_seen_at/updated_at to now for the given fingerprints. Returns the rows updated.

        Rows already seen after now are left alone, so last_seen_at never moves back.
        """
        if not fingerprints:
            return 0
        touched = 0
        try:
            for chunk in chunked(list(fingerprints), LOOKUP_CHUNK_SIZE):
                result = self.session.execute(
                    update(UnifiedVulnerability)
                    .where(
                        UnifiedVulnerability.fingerprint.in_(chunk),
                        UnifiedVulnerability.last_seen_at <= now,
                    )
                    .values(last_seen_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                touched += result.rowcount or 0
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return touched

    def reopen_unified(self, fingerprints: Sequence[str], now: datetime) -> int:
        """Set fixed rows among fingerprints back to open. Returns the number reopened."""
        if not fingerprints:
            return 0
        reopened = 0
        try:
            for chunk in chunked(list(fingerprints), LOOKUP_CHUNK_SIZE):
                result = self.session.execute(
                    update(UnifiedVulnerability)
                    .where(
                        UnifiedVulnerability.fingerprint.in_(chunk),
                        UnifiedVulnerability.status == "fixed",
                    )
                    .values(status="open", resolved_at=None, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                reopened += result.rowcount or 0
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return reopened

    def mark_fixed(self, vulnerability_ids: Iterable[int], now: datetime) -> int:
        """Set open rows among the ids to fixed. Returns the number of rows changed."""
        ids = sorted(set(vulnerability_ids))
        if not ids:
            return 0
        fixed = 0
        try:
            for chunk in chunked(ids, LOOKUP_CHUNK_SIZE):
                result = self.session.execute(
                    update(UnifiedVulnerability)
                    .where(
                        UnifiedVulnerability.id.in_(chunk),
                        UnifiedVulnerability.status == "open",
                    )
                    .values(status="fixed", resolved_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                fixed += result.rowcount or 0
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return fixed

    # -- instances -------------------------------------------------------------

    def insert_instance_batch(self, rows: Sequence[dict[str, Any]]) -> int:
        """Insert all instance rows in one transaction. Raises on any failure (including duplicates)."""
        try:
            self.session.add_all([VulnerabilityInstance(**row) for row in rows])
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return len(rows)

    def insert_instance(self, row: dict[str, Any]) -> None:
        """Insert one instance row. Raises DuplicateKeyError if instance_key exists."""
        try:
            self.session.add(VulnerabilityInstance(**row))
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            if is_unique_violation(e):
                raise DuplicateKeyError(
                    f"Instance {row.get('instance_key')} already exists.", cause=e
                ) from e
            raise
        except SQLAlchemyError:
            self.session.rollback()
            raise

    def instance_vulnerability_ids(self, scan_id: str) -> set[int]:
        """Distinct unified ids referenced by a scan's instances."""
        rows = self.session.execute(
            select(VulnerabilityInstance.vulnerability_id)
            .where(VulnerabilityInstance.scan_id == scan_id)
            .distinct()
        ).scalars()
        return set(rows)

    # -- scans -----------------------------------------------------------------

    def get_scan(self, scan_id: str) -> Scan | None:
        return self.session.get(Scan, scan_id)

    def complete_scan(
        self,
        scan_id: str,
        repository_id: str,
        workspace_id: str,
        now: datetime,
    ) -> Scan:
        """Record the scan as completed, creating the row when the lifecycle has not."""
        try:
            scan = self.session.get(Scan, scan_id)
            if scan is None:
                scan = Scan(
                    id=scan_id,
                    repository_id=repository_id,
                    workspace_id=workspace_id,
                    created_at=now,
                )
                self.session.add(scan)
            scan.status = "completed"
            scan.completed_at = scan.completed_at or now
            self.session.commit()
        except SQLAlchemyError:
            self.session.rollback()
            raise
        return scan

    def previous_completed_scan(self, repository_id: str, current: Scan) -> Scan | None:
        """Most recently created completed scan of the repository created strictly before current."""
        return self.session.execute(
            select(Scan)
            .where(
                Scan.repository_id == repository_id,
                Scan.status == "completed",
                Scan.created_at < current.created_at,
                Scan.id != current.id,
            )
            .order_by(Scan.created_at.desc())
            .limit(1)
        ).scalar_one_or_none()

    # -- reads for the API -----------------------------------------------------

    def list_unified(
        self,
        repository_id: str | None = None,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[tuple[UnifiedVulnerability, int]], int]:
        """Return ((vulnerability, instance_count) page, total) ordered by last_seen_at desc."""
        filters = []
        if repository_id:
            filters.append(UnifiedVulnerability.repository_id == repository_id)
        if status:
            filters.append(UnifiedVulnerability.status == status)

        total = self.session.execute(
            select(func.count(UnifiedVulnerability.id)).where(*filters)
        ).scalar_one()

        counts = (
            select(
                VulnerabilityInstance.vulnerability_id.label("vulnerability_id"),
                func.count(VulnerabilityInstance.id).label("instance_count"),
            )
            .group_by(VulnerabilityInstance.vulnerability_id)
            .subquery()
        )
        rows = self.session.execute(
            select(UnifiedVulnerability, func.coalesce(counts.c.instance_count, 0))
            .outerjoin(counts, counts.c.vulnerability_id == UnifiedVulnerability.id)
            .where(*filters)
            .order_by(UnifiedVulnerability.last_seen_at.desc(), UnifiedVulnerability.id)
            .limit(limit)
            .offset(offset)
        ).all()
        return [(vuln, int(count)) for vuln, count in rows], int(total)

    def get_unified(self, vulnerability_id: int) -> UnifiedVulnerability | None:
        return self.session.get(UnifiedVulnerability, vulnerability_id)

    def list_instances(self, vulnerability_id: int) -> list[VulnerabilityInstance]:
        return list(
            self.session.execute(
                select(VulnerabilityInstance)
                .where(VulnerabilityInstance.vulnerability_id == vulnerability_id)
                .order_by(VulnerabilityInstance.detected_at.desc(), VulnerabilityInstance.id)
            ).scalars()
        )
