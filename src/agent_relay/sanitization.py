"""Redaction of secrets and PII in error text persisted to the store."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterable

_MAX_PREVIEW_CHARS = 2_000
_MIN_SECRET_VALUE_CHARS = 4

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-(?:ant-)?[a-z0-9\-_]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b([a-z0-9_]*(?:api_key|apikey|secret|token|password))\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        lambda match: f"{match.group(1)}=[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
    (
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
        "[redacted-email]",
    ),
)


def sanitize_preview(
    text: str,
    *,
    max_chars: int = _MAX_PREVIEW_CHARS,
    secret_values: Iterable[str] = (),
) -> str:
    """Redact obvious secrets/PII, mask known secret values and clamp size."""

    compact = text.strip()
    if not compact:
        return ""

    redacted = mask_values(compact, secret_values)
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars]


def mask_values(text: str, values: Iterable[str]) -> str:
    """Replace literal occurrences of injected secret values."""

    candidates = {item for item in values if len(item) >= _MIN_SECRET_VALUE_CHARS}
    for value in sorted(candidates, key=len, reverse=True):
        text = text.replace(value, "[redacted-secret]")
    return text
