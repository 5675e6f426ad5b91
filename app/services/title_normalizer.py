"""Vulnerability titles: a three-tier chain (AI, deterministic, literal) that always yields a usable title.

Title rules for the deterministic tier:
  - 3-12 words, at most 120 characters
  - no file paths, line numbers or scanner boilerplate ("Found:", "Detected:")
  - no trailing remediation sentences
  - never the same word sequence repeated ("X X" -> "X")
"""

import logging
import re
from enum import IntEnum
from typing import TYPE_CHECKING, NamedTuple

from app.schemas.findings import RawFinding, TitleContext

if TYPE_CHECKING:
    from app.services.title_generator import TitleGenerator

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 120
MAX_TITLE_WORDS = 12
MIN_TITLE_WORDS = 3
MIN_TITLE_CHARS = 5

UNKNOWN_TITLE = "Unknown Vulnerability"

# Dot segments that carry no meaning in a title (e.g. semgrep's "lang.security.audit").
NAMESPACE_SEGMENTS: frozenset[str] = frozenset({"security", "audit", "lang", "check", "rules"})
# Leading tokens naming the scanner rather than the issue (e.g. checkov's CKV_).
SCANNER_TOKENS: frozenset[str] = frozenset({"ckv", "semgrep", "gitleaks", "checkov", "trivy", "osv"})

ACRONYMS: frozenset[str] = frozenset({
    "api", "aws", "azure", "csrf", "dos", "gcp", "html", "http", "https", "iam", "id",
    "jwt", "k8s", "ldap", "md5", "rce", "rsa", "s3", "sha1", "sql", "ssh", "ssl", "ssrf",
    "tls", "url", "xml", "xss", "xxe",
})

_ADVISORY_ID = re.compile(r"^(CVE|CWE|GHSA)-", re.IGNORECASE)
_BOILERPLATE_PREFIX = re.compile(r"^(Found|Detected|Scanner found|Issue|Vulnerability):\s*", re.IGNORECASE)
_SEVERITY_PREFIX = re.compile(r"^(Security|Warning|Error):\s*", re.IGNORECASE)
_FILE_REFERENCE = re.compile(
    r"\s+in\s+[\w/\\.-]+\.(js|jsx|ts|tsx|py|go|java|rb|php|c|cpp|h|cs|tf|yaml|yml)\b",
    re.IGNORECASE,
)
_AT_LINE = re.compile(r"\s+at line \d+", re.IGNORECASE)
_LINE_COLUMN = re.compile(r":\d+:\d+")
_REMEDIATION_TAIL = re.compile(r"\.\s+(Fix|Update|Change|Modify|Replace|Remove)\b.*", re.IGNORECASE)
_WORD_SEPARATORS = re.compile(r"[-_\s]+")


class TitleTier(IntEnum):
    """Which tier of the chain produced a title."""

    AI = 1
    DETERMINISTIC = 2
    LITERAL = 3


class TitleOutcome(NamedTuple):
    title: str
    tier: TitleTier
    errors: int


def collapse_self_duplication(title: str | None) -> str:
    """
    Collapse a title made of one word sequence repeated into a single copy.

    "Taint Unsafe Echo Tag Taint Unsafe Echo Tag" -> "Taint Unsafe Echo Tag".
    Comparison is case-insensitive; whitespace is normalized.
    """
    words = (title or "").split()
    n = len(words)
    lowered = [w.lower() for w in words]
    for period in range(1, n // 2 + 1):
        if n % period:
            continue
        unit = lowered[:period]
        if all(lowered[i:i + period] == unit for i in range(period, n, period)):
            return " ".join(words[:period])
    return " ".join(words)


def _humanize_word(word: str) -> str:
    lower = word.lower()
    if lower in ACRONYMS:
        return lower.upper()
    return word[:1].upper() + word[1:].lower()


def _enforce_limits(title: str, ellipsis: bool = False) -> str:
    words = title.split()
    if len(words) > MAX_TITLE_WORDS:
        title = " ".join(words[:MAX_TITLE_WORDS]) + ("..." if ellipsis else "")
    if len(title) > MAX_TITLE_LENGTH:
        title = title[: MAX_TITLE_LENGTH - 3].rstrip() + "..."
    return title


def _capitalize(title: str) -> str:
    if not title or title[0] == title[0].upper():
        return title
    return " ".join(w[:1].upper() + w[1:] for w in title.split(" "))


def title_from_rule_id(rule_id: str | None, scanner_type: str | None = None) -> str:
    """
    Derive a readable title from a rule id.

    "javascript.lang.security.audit.xss.taint-unsafe-echo-tag" -> "XSS Taint Unsafe Echo Tag"
    "generic-api-key" (secrets) -> "Generic API Key Exposed"
    "CVE-2023-12345" -> "CVE-2023-12345"
    Returns "" when the rule id is empty.
    """
    rule = (rule_id or "").strip()
    if not rule:
        return ""
    if _ADVISORY_ID.match(rule):
        return rule.upper()

    if "." in rule:
        parts = [p for p in rule.split(".") if p]
        relevant = [p for p in parts[-3:] if p.lower() not in NAMESPACE_SEGMENTS]
        parts = relevant[-2:] or parts[-1:]
    else:
        parts = [rule]

    words = [w for part in parts for w in _WORD_SEPARATORS.split(part) if w]
    if len(words) > 1 and words[0].lower() in SCANNER_TOKENS:
        words = words[1:]
    humanized = [_humanize_word(w) for w in words]
    if scanner_type == "secrets" and "exposed" not in (w.lower() for w in humanized):
        humanized.append("Exposed")

    return collapse_self_duplication(_enforce_limits(" ".join(humanized)))


def clean_scanner_title(raw_title: str | None) -> str:
    """Strip boilerplate, file references, line numbers and remediation tails from a scanner title."""
    cleaned = (raw_title or "").strip()
    cleaned = _BOILERPLATE_PREFIX.sub("", cleaned)
    cleaned = _SEVERITY_PREFIX.sub("", cleaned)
    cleaned = _FILE_REFERENCE.sub("", cleaned)
    cleaned = _AT_LINE.sub("", cleaned)
    cleaned = _LINE_COLUMN.sub("", cleaned)
    cleaned = _REMEDIATION_TAIL.sub("", cleaned)
    return collapse_self_duplication(cleaned)


def normalize_title(
    rule_id: str | None,
    raw_title: str | None = None,
    scanner_type: str | None = None,
) -> str:
    """
    Deterministic tier. Use the cleaned scanner title when it is a usable title,
    otherwise derive one from the rule id. May return "" when both are empty.
    """
    rule = (rule_id or "").strip()
    from_rule = title_from_rule_id(rule, scanner_type)

    cleaned = clean_scanner_title(raw_title)
    if not cleaned or cleaned.lower() == rule.lower():
        return from_rule

    too_short = len(cleaned.split()) < MIN_TITLE_WORDS or len(cleaned) < MIN_TITLE_CHARS
    if too_short and from_rule:
        return from_rule
    return collapse_self_duplication(_capitalize(_enforce_limits(cleaned, ellipsis=True)))


def literal_title(finding: RawFinding) -> str:
    """Last tier: the raw title, else the raw rule id, else UNKNOWN_TITLE."""
    for candidate in (finding.title, finding.rule_id):
        title = collapse_self_duplication(candidate)
        if title:
            return title
    return UNKNOWN_TITLE


async def resolve_title(
    finding: RawFinding,
    generator: "TitleGenerator | None" = None,
) -> TitleOutcome:
    """
    Run the title chain for one finding. Never raises.

    Each tier's failure is caught here and counted in TitleOutcome.errors; the
    next tier takes over. The self-duplication guard applies to every tier.
    """
    errors = 0

    if generator is not None:
        context = TitleContext.from_finding(finding)
        if generator.accepts(context):
            try:
                title = collapse_self_duplication(await generator.generate_title(context))
            except Exception as e:
                errors += 1
                logger.warning(
                    "AI title generation failed; falling back to deterministic title",
                    extra={"rule_id": finding.rule_id, "scanner_type": finding.type, "error": str(e)},
                )
            else:
                if title:
                    return TitleOutcome(title, TitleTier.AI, errors)
                errors += 1
                logger.warning(
                    "AI title generation returned an empty title",
                    extra={"rule_id": finding.rule_id, "scanner_type": finding.type},
                )

    try:
        title = collapse_self_duplication(
            normalize_title(finding.rule_id, finding.title, finding.type)
        )
        if title:
            return TitleOutcome(title, TitleTier.DETERMINISTIC, errors)
    except Exception:
        errors += 1
        logger.exception(
            "Deterministic title normalization failed; using literal title",
            extra={"rule_id": finding.rule_id, "scanner_type": finding.type},
        )

    return TitleOutcome(literal_title(finding), TitleTier.LITERAL, errors)
