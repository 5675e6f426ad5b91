"""AI title tier: ask a local LLM (Ollama) for a short human-readable vulnerability title.

The generator is an unreliable collaborator. It never retries; every failure
raises TitleGenerationError and the caller falls back to the deterministic tier.
"""

import asyncio
import logging
import re
import time
from functools import lru_cache
from typing import Protocol

import httpx

from app.core.config import Settings, get_settings
from app.schemas.findings import TitleContext, severity_at_least
from app.services.title_normalizer import (
    MAX_TITLE_LENGTH,
    MAX_TITLE_WORDS,
    MIN_TITLE_WORDS,
    collapse_self_duplication,
)

logger = logging.getLogger(__name__)

MIN_AI_TITLE_LENGTH = 10
MAX_PROMPT_DESCRIPTION_CHARS = 200

# A title containing any of these is rejected.
FORBIDDEN_TITLE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(found|detected|scanner)\b", re.IGNORECASE),
    re.compile(r"\b(step \d+|first|then|next)\b", re.IGNORECASE),
    re.compile(r"\.(js|ts|py|go|java|rb|php)\b"),
    re.compile(r"/|\\|\.\.\."),
    re.compile(r"\bline \d+|:\d+", re.IGNORECASE),
    re.compile(r"\b(fix|update|change|modify)\b", re.IGNORECASE),
)

_TITLE_PREFIX = re.compile(r"^title:\s*", re.IGNORECASE)


class TitleGenerationError(Exception):
    """Raised when the AI tier cannot produce a valid title (unreachable, timeout, bad output)."""

    def __init__(self, message: str, cause: Exception | None = None) -> None:
        self.message = message
        self.cause = cause
        super().__init__(message)


class TitleGenerator(Protocol):
    """Contract of the AI title tier."""

    def accepts(self, context: TitleContext) -> bool:
        """Whether the AI tier should be consulted for this finding at all."""
        ...

    async def generate_title(self, context: TitleContext) -> str:
        """Return a title or raise."""
        ...


def validate_title(title: str) -> list[str]:
    """Return the list of rule violations for a candidate title (empty when valid)."""
    issues: list[str] = []
    trimmed = title.strip()
    if len(trimmed) < MIN_AI_TITLE_LENGTH:
        issues.append(f"too short ({len(trimmed)} < {MIN_AI_TITLE_LENGTH} chars)")
    if len(trimmed) > MAX_TITLE_LENGTH:
        issues.append(f"too long ({len(trimmed)} > {MAX_TITLE_LENGTH} chars)")
    words = trimmed.split()
    if len(words) < MIN_TITLE_WORDS:
        issues.append(f"too few words ({len(words)} < {MIN_TITLE_WORDS})")
    if len(words) > MAX_TITLE_WORDS:
        issues.append(f"too many words ({len(words)} > {MAX_TITLE_WORDS})")
    for pattern in FORBIDDEN_TITLE_PATTERNS:
        if pattern.search(trimmed):
            issues.append(f"contains forbidden pattern {pattern.pattern!r}")
    if collapse_self_duplication(trimmed) != " ".join(words):
        issues.append("title repeats itself")
    return issues


def clean_model_output(text: str) -> str:
    """First line only, without surrounding quotes or a 'Title:' prefix."""
    lines = text.strip().splitlines()
    first = lines[0].strip() if lines else ""
    first = _TITLE_PREFIX.sub("", first)
    return first.strip().strip("\"'").strip()


def _build_prompt(context: TitleContext) -> str:
    description = context.description[:MAX_PROMPT_DESCRIPTION_CHARS]
    cwe_line = f"\n- CWE: {context.cwe}" if context.cwe else ""
    return f"""Generate a SHORT, human-readable title for this security vulnerability.

RULES:
- 5-12 words maximum
- At most {MAX_TITLE_LENGTH} characters
- Plain English, no jargon
- NO file paths, line numbers, or code
- NO "Found", "Detected", or scanner boilerplate
- NO remediation steps

Vulnerability:
- Scanner: {context.scanner_type}
- Severity: {context.severity}
- Rule ID: {context.rule_id}
- Description: {description}{cwe_line}

Respond with ONLY the title, nothing else."""


class OllamaTitleGenerator:
    """
    Title generator backed by Ollama's /api/generate.

    Titles are cached per (rule_id, scanner_type, severity); identical requests in
    flight share one call. After TITLE_AI_MAX_FAILURES consecutive failures the
    generator stops accepting work.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._cache: dict[tuple[str, str, str], str] = {}
        self._pending: dict[tuple[str, str, str], asyncio.Future[str]] = {}
        self._semaphore: asyncio.Semaphore | None = None
        self._consecutive_failures = 0

    @property
    def disabled(self) -> bool:
        return self._consecutive_failures >= self.settings.TITLE_AI_MAX_FAILURES

    def accepts(self, context: TitleContext) -> bool:
        if self.disabled:
            return False
        return severity_at_least(context.severity, self.settings.TITLE_AI_MIN_SEVERITY)

    @staticmethod
    def _cache_key(context: TitleContext) -> tuple[str, str, str]:
        return (context.rule_id, context.scanner_type, context.severity)

    async def generate_title(self, context: TitleContext) -> str:
        key = self._cache_key(context)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        pending = self._pending.get(key)
        if pending is not None:
            return await asyncio.shield(pending)

        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending[key] = future
        try:
            title = await self._request_title(context)
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            self._consecutive_failures += 1
            error = e if isinstance(e, TitleGenerationError) else TitleGenerationError(
                f"Title generation failed: {e}", cause=e
            )
            # Every waiter on this key must be released, whatever went wrong.
            future.set_exception(error)
            # Waiters consume the exception; mark it retrieved for the owner.
            future.exception()
            if error is e:
                raise
            raise error from e
        else:
            self._consecutive_failures = 0
            self._cache[key] = title
            future.set_result(title)
            return title
        finally:
            self._pending.pop(key, None)

    async def _request_title(self, context: TitleContext) -> str:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.settings.TITLE_AI_MAX_CONCURRENCY)

        url = f"{self.settings.OLLAMA_BASE_URL.rstrip('/')}/api/generate"
        payload = {
            "model": self.settings.OLLAMA_MODEL,
            "prompt": _build_prompt(context),
            "stream": False,
            "options": {
                "temperature": self.settings.OLLAMA_TEMPERATURE,
                "top_p": self.settings.OLLAMA_TOP_P,
                "repeat_penalty": self.settings.OLLAMA_REPEAT_PENALTY,
                "seed": self.settings.OLLAMA_SEED,
            },
        }
        timeout = httpx.Timeout(self.settings.TITLE_AI_TIMEOUT_SEC)

        async with self._semaphore:
            start = time.perf_counter()
            try:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.post(url, json=payload)
            except httpx.ConnectError as e:
                raise TitleGenerationError("Ollama is unreachable.", cause=e) from e
            except httpx.TimeoutException as e:
                raise TitleGenerationError("Ollama title request timed out.", cause=e) from e
            except httpx.HTTPError as e:
                raise TitleGenerationError("Ollama title request failed.", cause=e) from e
            elapsed = time.perf_counter() - start

        if response.status_code != 200:
            raise TitleGenerationError(f"Ollama returned status {response.status_code}.")

        try:
            body = response.json()
        except ValueError as e:
            # JSONDecodeError, or UnicodeDecodeError for a body that is not valid UTF-8.
            raise TitleGenerationError("Ollama response body is not valid JSON.", cause=e) from e

        raw = body.get("response") if isinstance(body, dict) else None
        if not isinstance(raw, str):
            raise TitleGenerationError("Ollama response missing 'response' field.")

        title = clean_model_output(raw)
        issues = validate_title(title)
        if issues:
            raise TitleGenerationError(f"Model title rejected: {'; '.join(issues)}")

        logger.debug(
            "AI title generated",
            extra={
                "llm_latency_seconds": elapsed,
                "model": self.settings.OLLAMA_MODEL,
                "rule_id": context.rule_id,
            },
        )
        return title


@lru_cache
def get_title_generator() -> OllamaTitleGenerator | None:
    """Process-wide generator, or None when TITLE_AI_ENABLED is false."""
    settings = get_settings()
    if not settings.TITLE_AI_ENABLED:
        return None
    return OllamaTitleGenerator(settings)
