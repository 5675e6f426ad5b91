"""Content fingerprint: the stable identity key of a logical vulnerability.

A fingerprint never includes location (file, line, package version), scan ids,
time or randomness, so the same vulnerability maps to the same fingerprint in
every file and every scan of a repository.
"""

import hashlib

from app.schemas.findings import PACKAGE_BASED_TYPES, RawFinding

FINGERPRINT_LENGTH = 32

# Scanner-namespace prefixes stripped from rule ids (matched after lowercasing).
RULE_ID_PREFIXES: tuple[str, ...] = (
    "semgrep.",
    "rules.",
    "gitleaks.",
    "checkov.",
    "trivy.",
    "osv.",
    "ckv_",
)

_UNKNOWN = "unknown"
_SEPARATOR = "|"


def normalize_rule_id(rule_id: str | None) -> str:
    """Trim, lowercase and strip scanner-namespace prefixes (repeatedly) from a rule id."""
    value = (rule_id or "").strip().lower()
    stripped = True
    while stripped:
        stripped = False
        for prefix in RULE_ID_PREFIXES:
            if value.startswith(prefix) and len(value) > len(prefix):
                value = value[len(prefix):].strip()
                stripped = True
    return value


def identity_key(finding: RawFinding, repository_id: str) -> str:
    """
    Build the pre-hash identity key.

    - sast/secrets/iac: repository_id|rule|primary_cwe (file path and line excluded)
    - sca/container: repository_id|package_name|rule (package version excluded)
    """
    rule = normalize_rule_id(finding.rule_id)
    if finding.type in PACKAGE_BASED_TYPES:
        package = (finding.package_name or "").strip() or _UNKNOWN
        return _SEPARATOR.join((repository_id, package, rule))
    return _SEPARATOR.join((repository_id, rule, finding.primary_cwe))


def hash_identity(key: str) -> str:
    """SHA-256 of the key, hex, truncated to FINGERPRINT_LENGTH."""
    return hashlib.sha256(key.encode("utf-8")).hexdigest()[:FINGERPRINT_LENGTH]


def fingerprint(finding: RawFinding, repository_id: str) -> str:
    """Return the fingerprint of a finding within a repository."""
    return hash_identity(identity_key(finding, repository_id))
