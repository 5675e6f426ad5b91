"""Instance key: identifies one occurrence of a unified vulnerability within one scan."""

import hashlib

from app.schemas.findings import PACKAGE_BASED_TYPES, RawFinding

_UNKNOWN = "unknown"


def normalize_path(file_path: str | None) -> str:
    """Trim, use forward slashes, and drop leading './' and '/'."""
    path = (file_path or "").strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path.lstrip("/")


def location(finding: RawFinding) -> str:
    """file:line for file-based classes, package:version for package-based classes."""
    if finding.type in PACKAGE_BASED_TYPES:
        package = (finding.package_name or "").strip() or _UNKNOWN
        version = (finding.package_version or "").strip() or _UNKNOWN
        return f"{package}:{version}"
    path = normalize_path(finding.file_path) or _UNKNOWN
    return f"{path}:{finding.line_start or 0}"


def instance_key(scan_id: str, finding: RawFinding, unified_id: int | str) -> str:
    """
    Stable key for (scan, unified vulnerability, location).

    Two scanners flagging the same location for the same logical vulnerability
    in one scan get the same key.
    """
    raw = f"{scan_id}|{unified_id}|{location(finding)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()
