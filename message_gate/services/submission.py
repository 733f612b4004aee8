"""
message_gate/services/submission.py — Submission controller (form state machine)
Fixed gate order per submit():
  in-flight gate → cooldown → identifier + rate limit → validate → sanitize
  → POST → interpret response → update state
One controller == one mounted form. It owns the cooldown timer and the
submission state; the rate-limit store is injected and may be shared.
FormRegistry keeps one controller per client for the HTTP service.
"""
from __future__ import annotations

import time
from typing import Awaitable, Callable, Optional

from loguru import logger

from message_gate.clients.backend_client import BackendClient, BackendUnavailableError
from message_gate.core import logging as app_logging
from message_gate.core.cooldown import Clock, CooldownTimer
from message_gate.core.rate_limiter import UNKNOWN_IDENTIFIER, RateLimiter, RateLimitStore
from message_gate.models import (
    CsrfPolicy,
    Failure,
    FailureKind,
    FormConfig,
    RateLimitOrigin,
    StatusResponse,
    SubmissionOutcome,
    SubmissionState,
)
from message_gate.utils.sanitizer import sanitize
from message_gate.utils.validators import validate_message

IdentifierResolver = Callable[[], Awaitable[str]]

# User-visible texts for outcomes that are not produced by the validator.
MSG_RATE_LIMITED = "Too many requests. Please try again later."
MSG_IN_PROGRESS = "Your message is still being sent."
MSG_BAD_REQUEST = "Invalid message."
MSG_SEND_FAILED = "An error occurred while sending the message."


def cooldown_message(remaining_ms: int) -> str:
    seconds = -(-remaining_ms // 1000)  # ceil
    return f"Please wait {seconds} seconds before sending again."


class SubmissionController:
    def __init__(
        self,
        config: FormConfig,
        backend: BackendClient,
        store: Optional[RateLimitStore] = None,
        resolve_identifier: Optional[IdentifierResolver] = None,
        clock: Clock = time.monotonic,
    ):
        self.config = config
        self.backend = backend
        self.rate_limiter = RateLimiter(
            store if store is not None else RateLimitStore(), config.rate_limit,
        )
        self.cooldown = CooldownTimer(
            config.cooldown_duration_ms,
            clock=clock,
            on_ready=self._on_cooldown_ready,
        )
        self._resolve_identifier = resolve_identifier
        self._clock = clock

        self.state = SubmissionState.IDLE
        self.last_failure: Optional[Failure] = None
        self.last_identifier: Optional[str] = None
        self.csrf_token: Optional[str] = None
        self.mounted = False

    # ──────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────────────

    async def mount(self) -> None:
        """Form mount: fetch the CSRF token once, if this form uses one."""
        if self.config.csrf == CsrfPolicy.REQUIRED:
            self.csrf_token = await self.backend.fetch_csrf_token()
            if self.csrf_token is None:
                logger.warning("CSRF token unavailable; submissions will be sent without it.")
        self.mounted = True

    async def unmount(self) -> None:
        self.cooldown.cancel()
        self.mounted = False

    def _on_cooldown_ready(self) -> None:
        logger.debug("Cooldown finished; form accepts submissions again.")

    # ──────────────────────────────────────────────────────────────────────────
    # State helpers
    # ──────────────────────────────────────────────────────────────────────────

    def _transition(self, new_state: SubmissionState) -> None:
        if new_state != self.state:
            app_logging.log_state_transition(self.state.value, new_state.value)
        self.state = new_state

    def _finish(
        self,
        state: SubmissionState,
        message_length: int,
        failure: Optional[Failure] = None,
        content: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> SubmissionOutcome:
        self._transition(state)
        self.last_failure = failure
        app_logging.log_submission(
            state.value,
            message_length,
            status_code=status_code,
            failure_kind=failure.kind.value if failure else None,
        )
        return SubmissionOutcome(
            state=state, failure=failure, content=content, status_code=status_code,
        )

    def _block(self, failure: Failure, message_length: int) -> SubmissionOutcome:
        return self._finish(SubmissionState.BLOCKED, message_length, failure=failure)

    async def _identify(self, identifier: Optional[str]) -> str:
        if identifier:
            return identifier
        if self._resolve_identifier is None:
            return UNKNOWN_IDENTIFIER
        return await self._resolve_identifier()

    # ──────────────────────────────────────────────────────────────────────────
    # submit()
    # ──────────────────────────────────────────────────────────────────────────

    async def submit(
        self,
        raw_text: str,
        identifier: Optional[str] = None,
    ) -> SubmissionOutcome:
        """
        Run one submission attempt through every gate and, if all pass, send it.
        Local refusals end in BLOCKED, backend/network problems in FAILED.
        No step retries automatically.
        """
        text = raw_text or ""
        length = len(text)

        # Overlapping call: leave the in-flight attempt's state untouched.
        if self.state == SubmissionState.SUBMITTING:
            failure = Failure(kind=FailureKind.SUBMISSION_IN_PROGRESS, message=MSG_IN_PROGRESS)
            app_logging.log_rejection("submission_controller", failure.kind.value)
            return SubmissionOutcome(state=SubmissionState.BLOCKED, failure=failure)

        # 1. Cooldown (a refused attempt does not restart the timer)
        remaining = self.cooldown.remaining_ms()
        if remaining > 0:
            app_logging.log_rejection("cooldown_timer", FailureKind.COOLDOWN_ACTIVE.value, {
                "remaining_ms": remaining,
            })
            return self._block(
                Failure(
                    kind=FailureKind.COOLDOWN_ACTIVE,
                    message=cooldown_message(remaining),
                    remaining_ms=remaining,
                ),
                length,
            )

        self._transition(SubmissionState.SUBMITTING)
        try:
            return await self._submit_gated(text, identifier)
        finally:
            # An unexpected error must not leave the form stuck in SUBMITTING.
            if self.state == SubmissionState.SUBMITTING:
                self._transition(SubmissionState.FAILED)

    async def _submit_gated(self, text: str, identifier: Optional[str]) -> SubmissionOutcome:
        length = len(text)

        # 2. Rate limit
        self.last_identifier = await self._identify(identifier)
        if not self.rate_limiter.check_and_record(self.last_identifier, self._clock()):
            return self._block(
                Failure(
                    kind=FailureKind.RATE_LIMITED,
                    message=MSG_RATE_LIMITED,
                    origin=RateLimitOrigin.LOCAL,
                ),
                length,
            )

        # 3. Validate raw text (markup included)
        result = validate_message(text, self.config)
        if not result.ok:
            app_logging.log_rejection("validator", result.reason.kind.value)
            return self._block(result.reason, length)

        # 4. Sanitize
        content = sanitize(text)

        # 5. Send
        try:
            response = await self.backend.post_message(content, csrf_token=self.csrf_token)
        except BackendUnavailableError as exc:
            app_logging.log_error("submission_controller", "post_message", exc)
            return self._finish(
                SubmissionState.FAILED,
                length,
                failure=Failure(kind=FailureKind.NETWORK_ERROR, message=MSG_SEND_FAILED),
                content=content,
            )

        # 6-9. Interpret
        if response.ok:
            self.cooldown.start()
            return self._finish(
                SubmissionState.SUCCEEDED, length,
                content=content, status_code=response.status_code,
            )

        if response.status_code == 429:
            failure = Failure(
                kind=FailureKind.RATE_LIMITED,
                message=MSG_RATE_LIMITED,
                origin=RateLimitOrigin.SERVER,
            )
        elif response.status_code == 400:
            server_message = response.error_message or MSG_BAD_REQUEST
            failure = Failure(
                kind=FailureKind.BAD_REQUEST,
                message=server_message,
                server_message=server_message,
            )
        else:
            failure = Failure(kind=FailureKind.UNKNOWN, message=MSG_SEND_FAILED)

        return self._finish(
            SubmissionState.FAILED, length,
            failure=failure, content=content, status_code=response.status_code,
        )

    # ──────────────────────────────────────────────────────────────────────────
    # Status
    # ──────────────────────────────────────────────────────────────────────────

    def status(self) -> StatusResponse:
        remaining_attempts = None
        if self.last_identifier is not None:
            remaining_attempts = self.rate_limiter.remaining_attempts(
                self.last_identifier, self._clock(),
            )
        return StatusResponse(
            state=self.state,
            cooldown=self.cooldown.snapshot(),
            last_failure=self.last_failure,
            csrf_token_loaded=self.csrf_token is not None,
            remaining_attempts=remaining_attempts,
        )


# ──────────────────────────────────────────────────────────────────────────────
# One form per client
# ──────────────────────────────────────────────────────────────────────────────

class FormRegistry:
    """
    One SubmissionController per client identifier, so each client gets its
    own cooldown and in-flight gate. All controllers share the backend client
    and the RateLimitStore.
    """

    def __init__(
        self,
        config: FormConfig,
        backend: BackendClient,
        store: Optional[RateLimitStore] = None,
        resolve_identifier: Optional[IdentifierResolver] = None,
        clock: Clock = time.monotonic,
        max_forms: int = 10_000,
    ):
        self.config = config
        self.backend = backend
        self.store = store if store is not None else RateLimitStore()
        self.max_forms = max_forms
        self._resolve_identifier = resolve_identifier
        self._clock = clock
        self._forms: dict[str, SubmissionController] = {}

    def __contains__(self, identifier: str) -> bool:
        return identifier in self._forms

    @property
    def size(self) -> int:
        return len(self._forms)

    async def identify(self, identifier: Optional[str] = None) -> str:
        if identifier:
            return identifier
        if self._resolve_identifier is None:
            return UNKNOWN_IDENTIFIER
        return await self._resolve_identifier()

    async def form_for(self, identifier: str) -> SubmissionController:
        """Return the client's controller, mounting a fresh one on first use."""
        controller = self._forms.get(identifier)
        if controller is None:
            await self._evict_idle()
            controller = SubmissionController(
                config=self.config,
                backend=self.backend,
                store=self.store,
                clock=self._clock,
            )
            controller.last_identifier = identifier
            self._forms[identifier] = controller
        if not controller.mounted:
            await controller.mount()
        return controller

    async def _evict_idle(self) -> None:
        # Rate-limit history lives in the shared store, so dropping a form
        # never resets a client's attempt count.
        if len(self._forms) < self.max_forms:
            return
        idle = [
            identifier for identifier, controller in self._forms.items()
            if controller.state != SubmissionState.SUBMITTING and not controller.cooldown.is_cooling
        ]
        for identifier in idle:
            await self._forms.pop(identifier).unmount()
        logger.info(f"Evicted {len(idle)} idle forms ({len(self._forms)} still active).")

    async def submit(
        self,
        raw_text: str,
        identifier: Optional[str] = None,
    ) -> SubmissionOutcome:
        identifier = await self.identify(identifier)
        controller = await self.form_for(identifier)
        return await controller.submit(raw_text, identifier=identifier)

    async def status(self, identifier: Optional[str] = None) -> StatusResponse:
        identifier = await self.identify(identifier)
        controller = await self.form_for(identifier)
        return controller.status()

    async def close(self) -> None:
        for controller in self._forms.values():
            if controller.mounted:
                await controller.unmount()
        self._forms.clear()
