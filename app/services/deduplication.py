"""Deduplication orchestrator: turn one scan's raw findings into unified vulnerabilities and instances.

Mental model:
  vulnerabilities_unified  -> one row per logical vulnerability (fingerprint)
  vulnerability_instances  -> one row per occurrence (file:line or package:version) per scan

Every raw finding becomes an instance; the fingerprint collapses them into the
right number of unified rows. Re-running a batch converges to the same state:
existing fingerprints are only bumped and existing instance keys are absorbed.
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any, NamedTuple

from sqlalchemy.exc import SQLAlchemyError

from app.core.config import Settings, get_settings
from app.schemas.findings import PACKAGE_BASED_TYPES, RawFinding, ScanBatch
from app.schemas.processing import ProcessingStats
from app.services.fingerprint import fingerprint
from app.services.instance_key import instance_key
from app.services.store import DuplicateKeyError, VulnerabilityStore, chunked
from app.services.title_generator import TitleGenerator
from app.services.title_normalizer import TitleOutcome, TitleTier, resolve_title

logger = logging.getLogger(__name__)

DEFAULT_DESCRIPTION = "No description available"
MAX_TITLE_COLUMN = 255
MAX_RULE_ID_COLUMN = 512
MAX_CWE_COLUMN = 64
MAX_SCANNER_COLUMN = 255
MAX_PATH_COLUMN = 2048
MAX_PACKAGE_NAME_COLUMN = 1024
MAX_PACKAGE_VERSION_COLUMN = 255


class VulnerabilityLookupError(Exception):
    """Raised when existing unified vulnerabilities cannot be read; the batch cannot continue."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


class ResolvedFinding(NamedTuple):
    finding: RawFinding
    title: str
    fingerprint: str


def _scanner_metadata(finding: RawFinding) -> dict[str, Any]:
    """Per-type metadata kept on the unified row for display."""
    metadata: dict[str, Any] = {
        "scanner": finding.scanner,
        **finding.metadata.model_dump(mode="json", exclude_none=True),
    }
    if finding.type == "sast":
        metadata["category"] = finding.category
        metadata["owasp"] = list(finding.owasp)
    elif finding.type in PACKAGE_BASED_TYPES:
        metadata["cve"] = finding.cve
    return metadata


def _clip(value: str | None, limit: int) -> str | None:
    """Cut a value to its column length; empty and None both become None."""
    return value[:limit] if value else None


def _unified_row(item: ResolvedFinding, batch: ScanBatch) -> dict[str, Any]:
    finding = item.finding
    return {
        "fingerprint": item.fingerprint,
        "title": item.title[:MAX_TITLE_COLUMN],
        "description": finding.description.strip() or DEFAULT_DESCRIPTION,
        "severity": finding.severity,
        "scanner_type": finding.type,
        "repository_id": batch.repository_id,
        "workspace_id": batch.workspace_id,
        "rule_id": (finding.rule_id.strip() or "unknown")[:MAX_RULE_ID_COLUMN],
        "cwe": finding.primary_cwe[:MAX_CWE_COLUMN] or None,
        "status": "open",
        "file_path": _clip(finding.file_path, MAX_PATH_COLUMN),
        "line_start": finding.line_start,
        "line_end": finding.line_end,
        "confidence": finding.confidence,
        "scanner_metadata": _scanner_metadata(finding),
        "first_detected_at": batch.now,
        "last_seen_at": batch.now,
        "created_at": batch.now,
        "updated_at": batch.now,
    }


def _instance_row(
    item: ResolvedFinding,
    unified_id: int,
    key: str,
    batch: ScanBatch,
) -> dict[str, Any]:
    finding = item.finding
    raw_finding = finding.model_dump(mode="json")
    raw_finding["title"] = item.title
    return {
        "instance_key": key,
        "scan_id": batch.scan_id,
        "vulnerability_id": unified_id,
        "scanner_type": finding.type,
        "scanner": _clip(finding.scanner, MAX_SCANNER_COLUMN),
        "file_path": _clip(finding.file_path, MAX_PATH_COLUMN),
        "line_start": finding.line_start,
        "line_end": finding.line_end,
        "package_name": _clip(finding.package_name, MAX_PACKAGE_NAME_COLUMN),
        "package_version": _clip(finding.package_version, MAX_PACKAGE_VERSION_COLUMN),
        "detected_at": batch.now,
        "raw_finding": raw_finding,
    }


async def _prepare(
    finding: RawFinding,
    repository_id: str,
    generator: TitleGenerator | None,
) -> tuple[TitleOutcome, str | None]:
    """Title and fingerprint for one finding. Independent of every other finding."""
    outcome = await resolve_title(finding, generator)
    try:
        fp = fingerprint(finding, repository_id)
    except Exception:
        logger.exception(
            "Fingerprint could not be computed; finding excluded",
            extra={"rule_id": finding.rule_id, "scanner_type": finding.type},
        )
        fp = None
    return outcome, fp


def _count_title(stats: ProcessingStats, outcome: TitleOutcome) -> None:
    stats.title_errors += outcome.errors
    if outcome.tier is TitleTier.AI:
        stats.titles_from_ai += 1
    elif outcome.tier is TitleTier.DETERMINISTIC:
        stats.titles_from_fallback += 1
    else:
        stats.titles_from_literal += 1


def _insert_unified_row(
    store: VulnerabilityStore,
    row: dict[str, Any],
    id_map: dict[str, int],
    stats: ProcessingStats,
) -> bool:
    """Insert one unified row; adopt the existing id on a fingerprint conflict. Returns True if adopted."""
    fp = row["fingerprint"]
    try:
        id_map[fp] = store.insert_unified(row)
        stats.unified_created += 1
        return False
    except DuplicateKeyError:
        pass
    except SQLAlchemyError as e:
        stats.unified_failed += 1
        logger.error("Failed to insert unified vulnerability", extra={"fingerprint": fp, "error": str(e)})
        return False

    # Another batch created this fingerprint after our lookup.
    try:
        existing_id = store.get_unified_id(fp)
    except SQLAlchemyError as e:
        stats.unified_failed += 1
        logger.error("Failed to re-read conflicting unified vulnerability", extra={"fingerprint": fp, "error": str(e)})
        return False
    if existing_id is None:
        stats.unified_failed += 1
        logger.error("Unified vulnerability conflicted but could not be found", extra={"fingerprint": fp})
        return False
    id_map[fp] = existing_id
    stats.unified_adopted += 1
    return True


def _create_unified(
    store: VulnerabilityStore,
    rows: Sequence[dict[str, Any]],
    id_map: dict[str, int],
    stats: ProcessingStats,
    chunk_size: int,
    scan_id: str,
) -> list[str]:
    """Bulk-insert new unified rows, replaying failed chunks row by row. Returns adopted fingerprints."""
    adopted: list[str] = []
    for chunk in chunked(rows, chunk_size):
        try:
            created = store.insert_unified_batch(chunk)
        except SQLAlchemyError as e:
            logger.warning(
                "Bulk insert of unified vulnerabilities failed; retrying row by row",
                extra={"scan_id": scan_id, "row_count": len(chunk), "error": str(e)},
            )
            for row in chunk:
                if _insert_unified_row(store, row, id_map, stats):
                    adopted.append(row["fingerprint"])
        else:
            id_map.update(created)
            stats.unified_created += len(created)
    return adopted


def _touch_unified(
    store: VulnerabilityStore,
    fingerprints: Sequence[str],
    now: datetime,
    stats: ProcessingStats,
    scan_id: str,
) -> int:
    """Bump last_seen_at, retrying per fingerprint when the bulk update fails. Returns rows touched."""
    if not fingerprints:
        return 0
    try:
        return store.touch_unified(fingerprints, now)
    except SQLAlchemyError as e:
        logger.warning(
            "Bulk last_seen_at update failed; retrying per fingerprint",
            extra={"scan_id": scan_id, "row_count": len(fingerprints), "error": str(e)},
        )
    touched = 0
    for fp in fingerprints:
        try:
            touched += store.touch_unified([fp], now)
        except SQLAlchemyError as e:
            stats.unified_failed += 1
            logger.error("Failed to update last_seen_at", extra={"fingerprint": fp, "error": str(e)})
    return touched


def _reopen_unified(
    store: VulnerabilityStore,
    fingerprints: Sequence[str],
    now: datetime,
    stats: ProcessingStats,
) -> None:
    if not fingerprints:
        return
    try:
        stats.unified_reopened += store.reopen_unified(fingerprints, now)
        return
    except SQLAlchemyError as e:
        logger.warning("Bulk reopen failed; retrying per fingerprint", extra={"error": str(e)})
    for fp in fingerprints:
        try:
            stats.unified_reopened += store.reopen_unified([fp], now)
        except SQLAlchemyError as e:
            stats.unified_failed += 1
            logger.error("Failed to reopen unified vulnerability", extra={"fingerprint": fp, "error": str(e)})


def _build_instances(
    resolved: Sequence[ResolvedFinding],
    id_map: dict[str, int],
    batch: ScanBatch,
    stats: ProcessingStats,
) -> list[dict[str, Any]]:
    """One instance row per distinct instance key in this batch."""
    seen: set[str] = set()
    rows: list[dict[str, Any]] = []
    for item in resolved:
        unified_id = id_map.get(item.fingerprint)
        if unified_id is None:
            stats.findings_unresolved += 1
            logger.warning(
                "No unified vulnerability resolved; instance skipped",
                extra={"scan_id": batch.scan_id, "fingerprint": item.fingerprint, "rule_id": item.finding.rule_id},
            )
            continue
        key = instance_key(batch.scan_id, item.finding, unified_id)
        if key in seen:
            stats.instances_skipped_duplicate += 1
            continue
        seen.add(key)
        rows.append(_instance_row(item, unified_id, key, batch))
    return rows


def _create_instances(
    store: VulnerabilityStore,
    rows: Sequence[dict[str, Any]],
    stats: ProcessingStats,
    chunk_size: int,
    scan_id: str,
) -> None:
    for chunk in chunked(rows, chunk_size):
        try:
            stats.instances_created += store.insert_instance_batch(chunk)
            continue
        except SQLAlchemyError as e:
            # Expected when a scan is replayed: some keys already exist.
            logger.info(
                "Bulk instance insert failed; retrying row by row",
                extra={"scan_id": scan_id, "row_count": len(chunk), "error": str(e)},
            )
        for row in chunk:
            try:
                store.insert_instance(row)
                stats.instances_created += 1
            except DuplicateKeyError:
                stats.instances_already_existed += 1
            except SQLAlchemyError as e:
                stats.instances_failed += 1
                logger.error(
                    "Failed to insert vulnerability instance",
                    extra={"scan_id": scan_id, "instance_key": row["instance_key"], "error": str(e)},
                )


async def process_batch(
    batch: ScanBatch,
    store: VulnerabilityStore,
    title_generator: TitleGenerator | None = None,
    settings: Settings | None = None,
) -> ProcessingStats:
    """
    Deduplicate one completed scan's findings into the unified catalog.

    Idempotent per (scan_id, findings). Only the existence lookup is fatal: its
    failure raises VulnerabilityLookupError. Write failures are retried row by
    row and counted in the returned stats; rows committed before an error are kept.
    """
    settings = settings or get_settings()
    chunk_size = settings.DEDUP_INSERT_CHUNK_SIZE
    stats = ProcessingStats()
    log_ctx = {
        "scan_id": batch.scan_id,
        "repository_id": batch.repository_id,
        "workspace_id": batch.workspace_id,
    }
    logger.info("Deduplication started", extra={**log_ctx, "finding_count": len(batch.findings)})

    if not batch.findings:
        logger.warning("No findings to process", extra=log_ctx)
        return stats

    # 1. Titles and fingerprints, concurrently per finding.
    prepared = await asyncio.gather(
        *(_prepare(f, batch.repository_id, title_generator) for f in batch.findings)
    )
    resolved: list[ResolvedFinding] = []
    for finding, (outcome, fp) in zip(batch.findings, prepared):
        _count_title(stats, outcome)
        if fp is None:
            stats.findings_unresolved += 1
            continue
        resolved.append(ResolvedFinding(finding, outcome.title, fp))

    # 2. One lookup for every distinct fingerprint.
    fingerprints = list(dict.fromkeys(item.fingerprint for item in resolved))
    try:
        id_map = store.fetch_unified_ids(fingerprints)
    except SQLAlchemyError as e:
        logger.error("Failed to fetch existing unified vulnerabilities", extra={**log_ctx, "error": str(e)})
        raise VulnerabilityLookupError("Failed to fetch existing vulnerabilities.", cause=e) from e

    # 3. Existing fingerprints get bumped; the first finding of each new one is its insert row.
    to_create: list[dict[str, Any]] = []
    to_touch: list[str] = []
    queued: set[str] = set()
    for item in resolved:
        if item.fingerprint in queued:
            continue
        queued.add(item.fingerprint)
        if item.fingerprint in id_map:
            to_touch.append(item.fingerprint)
        else:
            to_create.append(_unified_row(item, batch))
    logger.info(
        "Fingerprints partitioned",
        extra={**log_ctx, "unique_fingerprints": len(fingerprints), "to_create": len(to_create), "to_update": len(to_touch)},
    )

    # 4. Create.
    adopted = _create_unified(store, to_create, id_map, stats, chunk_size, batch.scan_id)

    # 5. Bump (after create: adopted rows were written by a concurrent batch).
    stats.unified_updated += _touch_unified(store, to_touch, batch.now, stats, batch.scan_id)
    _touch_unified(store, adopted, batch.now, stats, batch.scan_id)
    if settings.REOPEN_ON_REDISCOVERY:
        _reopen_unified(store, to_touch + adopted, batch.now, stats)

    # 6. Instances.
    instance_rows = _build_instances(resolved, id_map, batch, stats)
    _create_instances(store, instance_rows, stats, chunk_size, batch.scan_id)

    logger.info("Deduplication completed", extra={**log_ctx, **stats.model_dump()})
    return stats
