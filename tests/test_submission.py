"""
tests/test_submission.py — Unit tests for the submission controller state machine
"""
from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from message_gate.core.rate_limiter import RateLimitStore
from message_gate.models import (
    FailureKind,
    FormConfig,
    RateLimitConfig,
    RateLimitOrigin,
    SubmissionState,
)


def posted_json(request: httpx.Request) -> dict:
    return json.loads(request.content.decode("utf-8"))


def _run(coro):
    return asyncio.run(coro)


# ──────────────────────────────────────────────────────────────────────────────
# Happy path and cooldown
# ──────────────────────────────────────────────────────────────────────────────

def test_successful_submission_sends_sanitized_content(make_controller, open_config, fake_backend):
    controller = make_controller(open_config)
    outcome = _run(controller.submit("<script>alert(1)</script>hello", identifier="ip"))

    assert outcome.state == SubmissionState.SUCCEEDED
    assert outcome.content == "hello"
    assert outcome.status_code == 200
    assert controller.state == SubmissionState.SUCCEEDED
    assert len(fake_backend.posted) == 1
    assert posted_json(fake_backend.posted[0]) == {"content": "hello"}
    assert fake_backend.posted[0].headers["Content-Type"] == "application/json"


def test_immediate_resubmit_hits_cooldown(make_controller, open_config, clock, fake_backend):
    controller = make_controller(open_config)

    async def scenario():
        first = await controller.submit("Hello world", identifier="ip")
        clock.advance(0.2)
        second = await controller.submit("Hello again", identifier="ip")
        return first, second

    first, second = _run(scenario())
    assert first.succeeded
    assert second.state == SubmissionState.BLOCKED
    assert second.failure.kind == FailureKind.COOLDOWN_ACTIVE
    assert abs(second.failure.remaining_ms - open_config.cooldown_duration_ms) <= 1000
    assert len(fake_backend.posted) == 1


def test_cooldown_rejection_does_not_reset_timer(make_controller, open_config, clock):
    controller = make_controller(open_config)

    async def scenario():
        await controller.submit("Hello world", identifier="ip")
        clock.advance(30.0)
        blocked = await controller.submit("Hello again", identifier="ip")
        clock.advance(30.0)
        allowed = await controller.submit("Third message", identifier="ip")
        return blocked, allowed

    blocked, allowed = _run(scenario())
    assert blocked.failure.remaining_ms == 30_000
    assert allowed.succeeded


def test_submit_allowed_after_cooldown_elapses(make_controller, clock):
    config = FormConfig(cooldown_duration_ms=15_000, csrf="absent")
    controller = make_controller(config)

    async def scenario():
        await controller.submit("Hello world", identifier="ip")
        clock.advance(15.0)
        return await controller.submit("Hello again", identifier="ip")

    assert _run(scenario()).succeeded


def test_failures_do_not_start_cooldown(make_controller, open_config, fake_backend):
    fake_backend.status_code = 500
    controller = make_controller(open_config)

    async def scenario():
        await controller.submit("Hello world", identifier="ip")
        fake_backend.status_code = 200
        return await controller.submit("Hello world", identifier="ip")

    assert _run(scenario()).succeeded


# ──────────────────────────────────────────────────────────────────────────────
# Local gates
# ──────────────────────────────────────────────────────────────────────────────

def test_validation_failure_makes_no_network_call(make_controller, open_config, fake_backend):
    controller = make_controller(open_config)
    outcome = _run(controller.submit("aaaaaa", identifier="ip"))
    assert outcome.state == SubmissionState.BLOCKED
    assert outcome.failure.kind == FailureKind.REPEATED_CHARACTERS
    assert fake_backend.posted == []
    assert controller.last_failure.kind == FailureKind.REPEATED_CHARACTERS


def test_empty_and_too_long_are_blocked(make_controller, open_config):
    controller = make_controller(open_config)

    async def scenario():
        return (
            await controller.submit("", identifier="ip"),
            await controller.submit("a" * 5000, identifier="ip"),
        )

    empty, too_long = _run(scenario())
    assert empty.failure.kind == FailureKind.EMPTY_MESSAGE
    assert too_long.failure.kind == FailureKind.TOO_LONG


def test_local_rate_limit_blocks_sixth_attempt(make_controller, open_config, fake_backend):
    controller = make_controller(open_config)

    async def scenario():
        # Validation failures still count as attempts.
        for _ in range(5):
            await controller.submit("", identifier="ip")
        return await controller.submit("Hello world", identifier="ip")

    outcome = _run(scenario())
    assert outcome.failure.kind == FailureKind.RATE_LIMITED
    assert outcome.failure.origin == RateLimitOrigin.LOCAL
    assert fake_backend.posted == []


def test_rate_limit_disabled(make_controller, fake_backend):
    config = FormConfig(rate_limit=None, cooldown_duration_ms=0, csrf="absent")
    controller = make_controller(config)

    async def scenario():
        return [await controller.submit(f"message {i}", identifier="ip") for i in range(8)]

    assert all(o.succeeded for o in _run(scenario()))
    assert len(fake_backend.posted) == 8


def test_shared_store_spans_controllers(make_controller, open_config):
    store = RateLimitStore()
    config = open_config.model_copy(update={"rate_limit": RateLimitConfig(count=1, window_ms=60_000)})
    first = make_controller(config, store=store)
    second = make_controller(config, store=store)

    async def scenario():
        await first.submit("Hello world", identifier="ip")
        return await second.submit("Hello world", identifier="ip")

    assert _run(scenario()).failure.kind == FailureKind.RATE_LIMITED


def test_identifier_resolved_when_not_given(make_controller, open_config):
    async def resolver():
        return "198.51.100.1"

    controller = make_controller(open_config, resolve_identifier=resolver)
    _run(controller.submit("Hello world"))
    assert controller.last_identifier == "198.51.100.1"


def test_missing_resolver_falls_back_to_unknown(make_controller, open_config):
    controller = make_controller(open_config)
    _run(controller.submit("Hello world"))
    assert controller.last_identifier == "unknown"


# ──────────────────────────────────────────────────────────────────────────────
# Backend responses
# ──────────────────────────────────────────────────────────────────────────────

def test_server_429_is_server_rate_limit(make_controller, open_config, fake_backend):
    fake_backend.status_code = 429
    outcome = _run(make_controller(open_config).submit("Hello world", identifier="ip"))
    assert outcome.state == SubmissionState.FAILED
    assert outcome.failure.kind == FailureKind.RATE_LIMITED
    assert outcome.failure.origin == RateLimitOrigin.SERVER


def test_server_400_carries_server_message(make_controller, open_config, fake_backend):
    fake_backend.status_code = 400
    fake_backend.body = {"error": "Message rejected by filter"}
    outcome = _run(make_controller(open_config).submit("Hello world", identifier="ip"))
    assert outcome.failure.kind == FailureKind.BAD_REQUEST
    assert outcome.failure.server_message == "Message rejected by filter"
    assert outcome.failure.message == "Message rejected by filter"


def test_server_400_without_body_uses_default(make_controller, open_config):
    def handler(request):
        return httpx.Response(400, text="nope")

    outcome = _run(make_controller(open_config, handler=handler).submit("Hello world", identifier="ip"))
    assert outcome.failure.kind == FailureKind.BAD_REQUEST
    assert outcome.failure.server_message == "Invalid message."


def test_other_status_is_unknown(make_controller, open_config, fake_backend):
    fake_backend.status_code = 503
    outcome = _run(make_controller(open_config).submit("Hello world", identifier="ip"))
    assert outcome.failure.kind == FailureKind.UNKNOWN
    assert outcome.status_code == 503


def test_success_with_non_json_body(make_controller, open_config):
    def handler(request):
        return httpx.Response(201, text="created")

    outcome = _run(make_controller(open_config, handler=handler).submit("Hello world", identifier="ip"))
    assert outcome.succeeded


def test_transport_error_is_network_error(make_controller, open_config):
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    controller = make_controller(open_config, handler=handler)
    outcome = _run(controller.submit("Hello world", identifier="ip"))
    assert outcome.state == SubmissionState.FAILED
    assert outcome.failure.kind == FailureKind.NETWORK_ERROR
    assert not controller.cooldown.is_cooling


# ──────────────────────────────────────────────────────────────────────────────
# CSRF and in-flight gate
# ──────────────────────────────────────────────────────────────────────────────

def test_csrf_token_fetched_on_mount_and_sent(make_controller, moderated_config, fake_backend):
    controller = make_controller(moderated_config)

    async def scenario():
        await controller.mount()
        await controller.submit("Hello world", identifier="ip")

    _run(scenario())
    token_requests = [r for r in fake_backend.requests if r.url.path == "/api/get-csrf-token"]
    assert len(token_requests) == 1
    assert fake_backend.posted[0].headers["X-CSRFToken"] == "tok-123"


def test_no_csrf_fetch_when_absent(make_controller, open_config, fake_backend):
    controller = make_controller(open_config)

    async def scenario():
        await controller.mount()
        await controller.submit("Hello world", identifier="ip")

    _run(scenario())
    assert all(r.url.path != "/api/get-csrf-token" for r in fake_backend.requests)
    assert "X-CSRFToken" not in fake_backend.posted[0].headers


def test_csrf_fetch_failure_is_not_fatal(make_controller, moderated_config):
    def handler(request):
        if request.url.path == "/api/get-csrf-token":
            raise httpx.ConnectError("down", request=request)
        return httpx.Response(200, json={})

    controller = make_controller(moderated_config, handler=handler)

    async def scenario():
        await controller.mount()
        return await controller.submit("Hello world", identifier="ip")

    outcome = _run(scenario())
    assert controller.csrf_token is None
    assert outcome.succeeded


def test_overlapping_submit_is_rejected(make_controller, open_config):
    posts = []

    async def handler(request):
        posts.append(request)
        await asyncio.sleep(0.05)
        return httpx.Response(200, json={})

    controller = make_controller(open_config, handler=handler)

    async def scenario():
        return await asyncio.gather(
            controller.submit("Hello world", identifier="ip"),
            controller.submit("Hello world", identifier="ip"),
        )

    first, second = _run(scenario())
    assert first.succeeded
    assert second.state == SubmissionState.BLOCKED
    assert second.failure.kind == FailureKind.SUBMISSION_IN_PROGRESS
    assert len(posts) == 1
    assert controller.state == SubmissionState.SUCCEEDED


def test_unexpected_error_does_not_leave_form_submitting(make_controller, open_config):
    async def resolver():
        raise RuntimeError("boom")

    controller = make_controller(open_config, resolve_identifier=resolver)
    with pytest.raises(RuntimeError):
        _run(controller.submit("Hello world"))
    assert controller.state == SubmissionState.FAILED


def test_status_snapshot(make_controller, open_config):
    controller = make_controller(open_config)
    _run(controller.submit("Hello world", identifier="ip"))
    status = controller.status()
    assert status.state == SubmissionState.SUCCEEDED
    assert status.cooldown.remaining_ms == open_config.cooldown_duration_ms
    assert status.remaining_attempts == 4


def test_injected_empty_store_is_the_one_written(make_controller, open_config):
    store = RateLimitStore()
    controller = make_controller(open_config, store=store)
    assert controller.rate_limiter.store is store

    _run(controller.submit("Hello world", identifier="ip"))
    assert len(store.get("ip")) == 1


# ──────────────────────────────────────────────────────────────────────────────
# Per-client forms
# ──────────────────────────────────────────────────────────────────────────────

def test_clients_have_independent_cooldowns(make_registry, open_config, fake_backend):
    forms = make_registry(open_config)

    async def scenario():
        a = await forms.submit("Hello from A", identifier="198.51.100.1")
        b = await forms.submit("Hello from B", identifier="198.51.100.2")
        a_again = await forms.submit("A again", identifier="198.51.100.1")
        return a, b, a_again

    a, b, a_again = _run(scenario())
    assert a.succeeded
    assert b.succeeded
    assert a_again.failure.kind == FailureKind.COOLDOWN_ACTIVE
    assert len(fake_backend.posted) == 2


def test_forms_share_one_rate_limit_store(make_registry, open_config):
    forms = make_registry(open_config)
    _run(forms.submit("Hello world", identifier="198.51.100.1"))
    _run(forms.submit("Hello world", identifier="198.51.100.2"))

    assert len(forms.store.get("198.51.100.1")) == 1
    assert len(forms.store.get("198.51.100.2")) == 1


def test_form_mounted_once_per_client(make_registry, moderated_config, fake_backend):
    forms = make_registry(moderated_config)

    async def scenario():
        first = await forms.form_for("198.51.100.1")
        second = await forms.form_for("198.51.100.1")
        await forms.form_for("198.51.100.2")
        return first, second

    first, second = _run(scenario())
    assert first is second
    assert first.mounted
    assert first.csrf_token == "tok-123"
    token_requests = [r for r in fake_backend.requests if r.url.path == "/api/get-csrf-token"]
    assert len(token_requests) == 2


def test_close_unmounts_every_form(make_registry, open_config):
    forms = make_registry(open_config)

    async def scenario():
        controller = await forms.form_for("198.51.100.1")
        await forms.close()
        return controller

    controller = _run(scenario())
    assert not controller.mounted
    assert forms.size == 0


def test_idle_forms_evicted_at_capacity(make_registry, open_config):
    forms = make_registry(open_config, max_forms=2)

    async def scenario():
        await forms.submit("Hello world", identifier="cooling")
        await forms.submit("   ", identifier="idle")
        await forms.form_for("new")

    _run(scenario())
    assert "cooling" in forms
    assert "idle" not in forms
    assert "new" in forms
    # The evicted client's attempt is still counted.
    assert len(forms.store.get("idle")) == 1


def test_registry_resolves_identifier_when_not_given(make_registry, open_config):
    forms = make_registry(open_config)
    _run(forms.submit("Hello world"))
    assert "unknown" in forms
