"""
message_gate/core/logging.py — loguru structured JSON logging setup
Every gate decision, backend call and state transition is logged as one
JSON record. Message bodies are never logged, only their length.
"""
from __future__ import annotations

import json
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Optional

from loguru import logger


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure loguru for structured JSON output to stdout.
    """
    # Remove default loguru handler
    logger.remove()

    logger.add(
        sys.stdout,
        level=log_level.upper(),
        format="{message}",
        serialize=True,       # loguru built-in JSON serialization
        backtrace=True,
        diagnose=False,       # never dump locals (may hold message text)
        colorize=False,
    )


def _build_log_record(
    component: str,
    operation: str,
    extra: Optional[dict[str, Any]] = None,
) -> dict[str, Any]:
    """Build a base structured log record."""
    record: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "component": component,
        "operation": operation,
    }
    if extra:
        record.update(extra)
    return record


# ──────────────────────────────────────────────────────────────────────────────
# Log event helpers
# ──────────────────────────────────────────────────────────────────────────────

def log_submission(
    state: str,
    message_length: int,
    status_code: Optional[int] = None,
    failure_kind: Optional[str] = None,
) -> None:
    """Every finished submit() call."""
    record = _build_log_record("submission_controller", "submit", {
        "state": state,
        "message_length": message_length,
        "status_code": status_code,
        "failure_kind": failure_kind,
    })
    logger.info(json.dumps(record))


def log_rejection(
    component: str,
    failure_kind: str,
    detail: Optional[dict[str, Any]] = None,
) -> None:
    """A local gate (cooldown, rate limiter, validator) refused an attempt."""
    record = _build_log_record(component, "reject", {
        "failure_kind": failure_kind,
        **(detail or {}),
    })
    logger.info(json.dumps(record))


def log_backend_call(
    endpoint: str,
    method: str,
    status_code: Optional[int],
    latency_ms: float,
    error: Optional[str] = None,
) -> None:
    """Every outbound HTTP call (CSRF token, message POST, IP lookup)."""
    record = _build_log_record("http_client", "request", {
        "endpoint": endpoint,
        "method": method,
        "status_code": status_code,
        "latency_ms": round(latency_ms, 2),
        "error": error,
    })
    level = "WARNING" if error or (status_code or 0) >= 400 else "INFO"
    logger.log(level, json.dumps(record))


def log_state_transition(old_state: str, new_state: str) -> None:
    record = _build_log_record("submission_controller", "state_transition", {
        "old_state": old_state,
        "new_state": new_state,
    })
    logger.debug(json.dumps(record))


def log_cooldown_event(event: str, remaining_ms: int) -> None:
    """event: started | expired"""
    record = _build_log_record("cooldown_timer", event, {
        "remaining_ms": remaining_ms,
    })
    logger.info(json.dumps(record))


def log_error(
    component: str,
    operation: str,
    error: Exception,
    context: Optional[dict[str, Any]] = None,
) -> None:
    """Every error must be logged with full context."""
    tb = traceback.format_exc()
    record = _build_log_record(component, operation, {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "stack_trace": tb[:2000] if tb else "",
        "context": context or {},
    })
    logger.error(json.dumps(record))
