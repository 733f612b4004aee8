"""
message_gate/config.py — Pydantic BaseSettings configuration
Named form profiles plus per-field overrides, loaded from env / .env.
"""
from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from message_gate.models import (
    CharsetPolicy,
    CsrfPolicy,
    FormConfig,
    RateLimitConfig,
    UrlPolicy,
)


# ── Form profiles: the two deployed variants of the message form ─────────────
PROFILES: dict[str, FormConfig] = {
    # Moderation form: long cooldown, CSRF token from the backend, any text.
    "moderated": FormConfig(
        cooldown_duration_ms=60_000,
        rate_limit=RateLimitConfig(count=5, window_ms=60_000),
        charset_policy=CharsetPolicy.UNRESTRICTED,
        url_policy=UrlPolicy.ALLOW,
        csrf=CsrfPolicy.REQUIRED,
    ),
    # Strict form: short cooldown, allow-listed characters, bare URLs refused.
    "strict": FormConfig(
        cooldown_duration_ms=15_000,
        rate_limit=RateLimitConfig(count=5, window_ms=60_000),
        charset_policy=CharsetPolicy.ALLOWLIST,
        url_policy=UrlPolicy.REJECT,
        csrf=CsrfPolicy.ABSENT,
    ),
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="MESSAGE_GATE_",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ────────────────────────────────────────────────────────────
    environment: str = "development"
    log_level: str = "INFO"

    # ── Form profile ───────────────────────────────────────────────────────────
    profile: str = "moderated"
    # Upper bound on live per-client forms before idle ones are dropped.
    max_forms: int = 10_000

    # ── Remote collaborators ───────────────────────────────────────────────────
    backend_base_url: str = "http://localhost:8080"
    ip_lookup_url: str = "https://api.ipify.org?format=json"
    request_timeout_seconds: float = 10.0

    # Use the HTTP peer address as the rate-limit identifier instead of the
    # self-reported IP from the lookup service.
    trust_peer_address: bool = False

    # ── Content rules ──────────────────────────────────────────────────────────
    max_message_length: int = 4096
    forbidden_words: list[str] = []

    # ── Profile overrides (None → keep profile value) ─────────────────────────
    cooldown_duration_ms: Optional[int] = None
    rate_limit_enabled: Optional[bool] = None
    rate_limit_count: Optional[int] = None
    rate_limit_window_ms: Optional[int] = None

    @field_validator("environment")
    @classmethod
    def validate_env(cls, v: str) -> str:
        allowed = {"development", "production", "testing"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    @field_validator("profile")
    @classmethod
    def validate_profile(cls, v: str) -> str:
        if v not in PROFILES:
            raise ValueError(f"profile must be one of {sorted(PROFILES)}")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def form_config(self) -> FormConfig:
        """Build the FormConfig record: selected profile + env overrides."""
        base = PROFILES[self.profile]
        updates: dict = {
            "max_message_length": self.max_message_length,
            "forbidden_words": list(self.forbidden_words),
        }
        if self.cooldown_duration_ms is not None:
            updates["cooldown_duration_ms"] = self.cooldown_duration_ms

        if self.rate_limit_enabled is False:
            updates["rate_limit"] = None
        elif self.rate_limit_count is not None or self.rate_limit_window_ms is not None:
            current = base.rate_limit or RateLimitConfig()
            updates["rate_limit"] = RateLimitConfig(
                count=self.rate_limit_count or current.count,
                window_ms=self.rate_limit_window_ms or current.window_ms,
            )
        return FormConfig.model_validate({**base.model_dump(), **updates})


@lru_cache()
def get_settings() -> Settings:
    """Return cached Settings instance. Use this everywhere."""
    return Settings()
