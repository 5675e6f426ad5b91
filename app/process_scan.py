"""
CLI entrypoint: deduplicate one completed scan's findings into the unified catalog.

  python -m app.process_scan findings.json --scan-id SCAN --workspace-id WS --repository-id REPO [--resolve]

findings.json holds an array of findings or an object with a "findings" array.
Prints the processing stats (and the resolution result with --resolve) as JSON.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from app.core.config import get_settings
from app.core.database import session_scope
from app.schemas.findings import RawFinding, ScanBatch
from app.services.auto_resolution import resolve_vanished
from app.services.deduplication import process_batch
from app.services.store import VulnerabilityStore
from app.services.title_generator import get_title_generator

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)

_findings_adapter = TypeAdapter(list[RawFinding])


def load_findings(path: Path) -> list[RawFinding]:
    """Read and validate findings from a JSON file. Raises ValueError on bad input."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValueError(f"Cannot read findings from {path}: {e}") from e
    if isinstance(data, dict):
        data = data.get("findings", [])
    if not isinstance(data, list):
        raise ValueError("Findings file must contain an array or an object with a 'findings' array.")
    try:
        return _findings_adapter.validate_python(data)
    except ValidationError as e:
        raise ValueError(f"Invalid findings: {e}") from e


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Deduplicate a scan's findings into the unified vulnerability catalog.")
    parser.add_argument("findings", type=Path, help="JSON file with the scan's raw findings")
    parser.add_argument("--scan-id", required=True)
    parser.add_argument("--workspace-id", required=True)
    parser.add_argument("--repository-id", required=True)
    parser.add_argument(
        "--resolve",
        action="store_true",
        help="After deduplication, mark vulnerabilities absent since the previous completed scan as fixed",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        findings = load_findings(args.findings)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1

    settings = get_settings()
    now = datetime.now(timezone.utc)
    batch = ScanBatch(
        scan_id=args.scan_id,
        workspace_id=args.workspace_id,
        repository_id=args.repository_id,
        now=now,
        findings=findings,
    )

    try:
        with session_scope() as db:
            store = VulnerabilityStore(db)
            stats = asyncio.run(process_batch(batch, store, get_title_generator(), settings))
            store.complete_scan(args.scan_id, args.repository_id, args.workspace_id, now)
            output: dict[str, object] = {"stats": stats.model_dump()}
            if args.resolve:
                resolution = resolve_vanished(store, args.repository_id, args.scan_id, now)
                output["resolution"] = resolution.model_dump()
    except Exception as e:
        logger.exception("Scan processing failed: %s", e)
        return 1
    print(json.dumps(output, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
