"""
message_gate/utils/validators.py — Message validation checklist and safe JSON parsing
Validation is an ordered checklist; the first failing rule decides the reason.
Pure: no network, no clock.
"""
from __future__ import annotations

import json
import re
from typing import Any, Optional
from urllib.parse import urlparse

from loguru import logger

from message_gate.models import (
    CharsetPolicy,
    Failure,
    FailureKind,
    FormConfig,
    UrlPolicy,
    ValidationResult,
)

# Protocols accepted as "an explicit URL" by the URL rule.
URL_PROTOCOLS = ("http", "https", "ftp")

_WHITESPACE_RE = re.compile(r"\s")


def safe_parse_json(text: str) -> Optional[dict[str, Any]]:
    """
    Safely parse JSON text. Returns None on failure (no exception raised).
    Non-object JSON (lists, scalars) also yields None.
    """
    text = (text or "").strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        logger.debug(f"JSON parse failed: {exc} | Text: {text[:200]!r}")
        return None
    return data if isinstance(data, dict) else None


# ──────────────────────────────────────────────────────────────────────────────
# Individual rules
# ──────────────────────────────────────────────────────────────────────────────

def is_blank(text: Optional[str]) -> bool:
    return not text or not text.strip()


def has_allowed_charset(text: str, pattern: str) -> bool:
    return re.fullmatch(pattern, text) is not None


def count_distinct_visible(text: str) -> int:
    """Number of distinct non-whitespace characters."""
    return len(set(_WHITESPACE_RE.sub("", text)))


def find_forbidden_word(text: str, words: list[str]) -> Optional[str]:
    """First forbidden word contained in text, case-insensitive substring match."""
    lowered = text.lower()
    for word in words:
        if word and word.lower() in lowered:
            return word
    return None


def is_bare_url(text: str) -> bool:
    """
    True if the whole message is a single URL with an explicit protocol,
    e.g. "https://example.com/x". URLs embedded in prose do not count.
    """
    candidate = text.strip()
    if not candidate or any(ch.isspace() for ch in candidate):
        return False
    try:
        parsed = urlparse(candidate)
    except ValueError:
        return False
    if parsed.scheme.lower() not in URL_PROTOCOLS or not parsed.netloc:
        return False
    host = parsed.hostname or ""
    return "." in host or host == "localhost"


# ──────────────────────────────────────────────────────────────────────────────
# Checklist
# ──────────────────────────────────────────────────────────────────────────────

def _reject(kind: FailureKind, message: str, **extra: Any) -> ValidationResult:
    return ValidationResult.rejected(Failure(kind=kind, message=message, **extra))


def validate_message(text: Optional[str], config: FormConfig) -> ValidationResult:
    """
    Run the checklist in order:
      1. empty / whitespace-only
      2. longer than max_message_length
      3. characters outside the allow-list (allowlist policy only)
      4. fewer than 2 distinct non-whitespace characters
      5. forbidden word
      6. message is a bare URL (reject policy only)
    Markup is not rejected here; the sanitizer strips it afterwards.
    """
    if is_blank(text):
        return _reject(FailureKind.EMPTY_MESSAGE, "Message cannot be empty.")

    if len(text) > config.max_message_length:
        return _reject(
            FailureKind.TOO_LONG,
            f"Message is too long. Maximum {config.max_message_length} characters.",
        )

    if (
        config.charset_policy == CharsetPolicy.ALLOWLIST
        and not has_allowed_charset(text, config.allowlist_pattern)
    ):
        return _reject(
            FailureKind.INVALID_CHARACTERS,
            "Message contains characters that are not allowed.",
        )

    if count_distinct_visible(text) < 2:
        return _reject(
            FailureKind.REPEATED_CHARACTERS,
            "Message contains too many repeated characters.",
        )

    word = find_forbidden_word(text, config.forbidden_words)
    if word is not None:
        return _reject(
            FailureKind.FORBIDDEN_WORD,
            f'Message contains a forbidden word: "{word}".',
            word=word,
        )

    if config.url_policy == UrlPolicy.REJECT and is_bare_url(text):
        return _reject(FailureKind.CONTAINS_URL, "Links are not allowed.")

    return ValidationResult.passed()
