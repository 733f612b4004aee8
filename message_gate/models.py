"""
message_gate/models.py — Pydantic data schemas
Form configuration record, validation/submission outcomes, cooldown and
submission state enums shared by the gatekeeper components.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


# ──────────────────────────────────────────────────────────────────────────────
# Enumerations
# ──────────────────────────────────────────────────────────────────────────────

class FailureKind(str, Enum):
    EMPTY_MESSAGE = "empty_message"
    TOO_LONG = "too_long"
    INVALID_CHARACTERS = "invalid_characters"
    REPEATED_CHARACTERS = "repeated_characters"
    FORBIDDEN_WORD = "forbidden_word"
    CONTAINS_URL = "contains_url"
    COOLDOWN_ACTIVE = "cooldown_active"
    RATE_LIMITED = "rate_limited"
    SUBMISSION_IN_PROGRESS = "submission_in_progress"
    BAD_REQUEST = "bad_request"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


class RateLimitOrigin(str, Enum):
    LOCAL = "local"
    SERVER = "server"


class SubmissionState(str, Enum):
    IDLE = "idle"
    BLOCKED = "blocked"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CooldownPhase(str, Enum):
    READY = "ready"
    COOLING = "cooling"


class CharsetPolicy(str, Enum):
    UNRESTRICTED = "unrestricted"
    ALLOWLIST = "allowlist"


class UrlPolicy(str, Enum):
    ALLOW = "allow"
    REJECT = "reject"


class CsrfPolicy(str, Enum):
    REQUIRED = "required"
    ABSENT = "absent"


# Letters and digits (any script), whitespace, and a fixed punctuation set.
DEFAULT_ALLOWLIST_PATTERN = r"[\w\s.,!?;:'\"()/\-]+"


# ──────────────────────────────────────────────────────────────────────────────
# Form configuration record
# ──────────────────────────────────────────────────────────────────────────────

class RateLimitConfig(BaseModel):
    count: int = Field(default=5, ge=1)
    window_ms: int = Field(default=60_000, ge=1)


class FormConfig(BaseModel):
    """
    One form, parameterized. Collapses the observed variants (cooldown length,
    character-set rule, URL rule, CSRF handling) into a single record.
    rate_limit=None disables the local rate limiter.
    """
    cooldown_duration_ms: int = Field(default=60_000, ge=0)
    rate_limit: Optional[RateLimitConfig] = Field(default_factory=RateLimitConfig)
    charset_policy: CharsetPolicy = CharsetPolicy.UNRESTRICTED
    allowlist_pattern: str = DEFAULT_ALLOWLIST_PATTERN
    url_policy: UrlPolicy = UrlPolicy.ALLOW
    csrf: CsrfPolicy = CsrfPolicy.REQUIRED
    max_message_length: int = Field(default=4096, ge=1)
    forbidden_words: list[str] = []

    @field_validator("forbidden_words")
    @classmethod
    def drop_blank_words(cls, v: list[str]) -> list[str]:
        return [w for w in v if w.strip()]


# ──────────────────────────────────────────────────────────────────────────────
# Outcomes
# ──────────────────────────────────────────────────────────────────────────────

class Failure(BaseModel):
    kind: FailureKind
    message: str                          # user-visible text
    word: Optional[str] = None            # forbidden_word
    remaining_ms: Optional[int] = None    # cooldown_active
    origin: Optional[RateLimitOrigin] = None  # rate_limited
    server_message: Optional[str] = None  # bad_request


class ValidationResult(BaseModel):
    reason: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.reason is None

    @classmethod
    def passed(cls) -> "ValidationResult":
        return cls()

    @classmethod
    def rejected(cls, reason: Failure) -> "ValidationResult":
        return cls(reason=reason)


class CooldownState(BaseModel):
    last_send_time: Optional[float] = None  # monotonic seconds
    remaining_ms: int = 0
    phase: CooldownPhase = CooldownPhase.READY


class SubmissionOutcome(BaseModel):
    state: SubmissionState
    failure: Optional[Failure] = None
    content: Optional[str] = None         # sanitized body actually sent
    status_code: Optional[int] = None     # backend HTTP status, if a POST was made

    @property
    def succeeded(self) -> bool:
        return self.state == SubmissionState.SUCCEEDED


# ──────────────────────────────────────────────────────────────────────────────
# Form service request/response bodies
# ──────────────────────────────────────────────────────────────────────────────

class SubmitRequest(BaseModel):
    content: str


class StatusResponse(BaseModel):
    state: SubmissionState
    cooldown: CooldownState
    last_failure: Optional[Failure] = None
    csrf_token_loaded: bool = False
    remaining_attempts: Optional[int] = None
