"""Auto-resolution: mark vulnerabilities fixed when they vanish between consecutive completed scans."""

import logging
from datetime import datetime, timezone

from app.schemas.processing import ResolutionResult
from app.services.store import VulnerabilityStore

logger = logging.getLogger(__name__)


def resolve_vanished(
    store: VulnerabilityStore,
    repository_id: str,
    current_scan_id: str,
    now: datetime | None = None,
) -> ResolutionResult:
    """
    Diff the current scan against the previous completed scan of the repository.

    Unified vulnerabilities with instances in the previous scan but none in the
    current one are set to fixed. Rows already fixed are left alone, so running
    this twice for the same scan is a no-op. Never reopens. Database errors propagate.
    """
    now = now or datetime.now(timezone.utc)

    current = store.get_scan(current_scan_id)
    if current is None:
        logger.warning(
            "Current scan not found; skipping auto-resolution",
            extra={"scan_id": current_scan_id, "repository_id": repository_id},
        )
        return ResolutionResult()

    previous = store.previous_completed_scan(repository_id, current)
    if previous is None:
        logger.info(
            "No previous completed scan; nothing to resolve",
            extra={"scan_id": current_scan_id, "repository_id": repository_id},
        )
        return ResolutionResult()

    previous_ids = store.instance_vulnerability_ids(previous.id)
    if not previous_ids:
        return ResolutionResult(previous_scan_id=previous.id)

    current_ids = store.instance_vulnerability_ids(current_scan_id)
    vanished = previous_ids - current_ids
    fixed_count = store.mark_fixed(vanished, now) if vanished else 0

    logger.info(
        "Auto-resolution completed",
        extra={
            "scan_id": current_scan_id,
            "previous_scan_id": previous.id,
            "repository_id": repository_id,
            "vanished": len(vanished),
            "fixed_count": fixed_count,
        },
    )
    return ResolutionResult(fixed_count=fixed_count, previous_scan_id=previous.id)
