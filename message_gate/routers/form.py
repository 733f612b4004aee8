"""
message_gate/routers/form.py — Form endpoints
Endpoints: POST /api/submit, GET /api/status
The router only translates between HTTP and the per-client form registry.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from message_gate.models import (
    FailureKind,
    StatusResponse,
    SubmissionOutcome,
    SubmissionState,
    SubmitRequest,
)
from message_gate.services.submission import FormRegistry

router = APIRouter()

# Local validation refusals → 400; throttling of any kind → 429.
_VALIDATION_KINDS = {
    FailureKind.EMPTY_MESSAGE,
    FailureKind.TOO_LONG,
    FailureKind.INVALID_CHARACTERS,
    FailureKind.REPEATED_CHARACTERS,
    FailureKind.FORBIDDEN_WORD,
    FailureKind.CONTAINS_URL,
    FailureKind.BAD_REQUEST,
}
_THROTTLE_KINDS = {
    FailureKind.COOLDOWN_ACTIVE,
    FailureKind.RATE_LIMITED,
    FailureKind.SUBMISSION_IN_PROGRESS,
}


def get_forms(request: Request) -> FormRegistry:
    return request.app.state.forms


def peer_identifier(request: Request) -> Optional[str]:
    """HTTP peer address when configured as trusted, else None (IP lookup decides)."""
    if request.app.state.settings.trust_peer_address and request.client is not None:
        return request.client.host
    return None


def outcome_status_code(outcome: SubmissionOutcome) -> int:
    if outcome.state == SubmissionState.SUCCEEDED:
        return status.HTTP_200_OK
    kind = outcome.failure.kind if outcome.failure else FailureKind.UNKNOWN
    if kind in _VALIDATION_KINDS:
        return status.HTTP_400_BAD_REQUEST
    if kind in _THROTTLE_KINDS:
        return status.HTTP_429_TOO_MANY_REQUESTS
    return status.HTTP_502_BAD_GATEWAY


# ──────────────────────────────────────────────────────────────────────────────
# POST /api/submit
# ──────────────────────────────────────────────────────────────────────────────

@router.post("/submit", response_model=SubmissionOutcome)
async def submit_message(
    request: Request,
    body: SubmitRequest,
    forms: FormRegistry = Depends(get_forms),
) -> JSONResponse:
    """
    Push one message through the gatekeeper and on to the moderation backend.
    The response body is always a SubmissionOutcome; the status code mirrors it.
    """
    outcome = await forms.submit(body.content, identifier=peer_identifier(request))
    return JSONResponse(
        status_code=outcome_status_code(outcome),
        content=outcome.model_dump(mode="json"),
    )


# ──────────────────────────────────────────────────────────────────────────────
# GET /api/status
# ──────────────────────────────────────────────────────────────────────────────

@router.get("/status", response_model=StatusResponse)
async def form_status(
    request: Request,
    forms: FormRegistry = Depends(get_forms),
) -> StatusResponse:
    """The calling client's submission state, cooldown countdown and rate-limit headroom."""
    return await forms.status(identifier=peer_identifier(request))
