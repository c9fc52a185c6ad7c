"""
Resonance — Matching API

Endpoints for discovering matches for a deployed prompt, listing a user's
matches, and accepting or declining them.  Lifecycle errors are translated
to HTTP status codes by the exception handlers in ``resonance.main``.
"""

from __future__ import annotations

import uuid

import structlog
from fastapi import APIRouter, Depends, Response, status

from resonance.api.deps import get_current_user_id, get_lifecycle_service
from resonance.schemas.match import (
    CleanupResponse,
    FindMatchesRequest,
    MatchAcceptanceResponse,
    MatchConfirmationResponse,
    MatchSummary,
)
from resonance.services.matching_service import MatchLifecycleService

logger = structlog.get_logger("resonance.api.matching")

router = APIRouter()


# ──────────────────────────────────────────────────────────────────────────────
# POST /find: Discover matches for a deployed prompt
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/find",
    response_model=list[MatchSummary],
    summary="Find matches for a deployed prompt",
)
async def find_matches(
    body: FindMatchesRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    lifecycle: MatchLifecycleService = Depends(get_lifecycle_service),
) -> list[MatchSummary]:
    """Run the expiry sweep, then create matches against other users'
    active prompts sharing the question or theme.  Only newly created
    matches are returned."""
    return await lifecycle.find_matches(user_id, body.deployed_prompt_id)


# ──────────────────────────────────────────────────────────────────────────────
# GET /: Visible matches
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "",
    response_model=list[MatchSummary],
    summary="List the caller's current matches",
)
async def list_matches(
    user_id: uuid.UUID = Depends(get_current_user_id),
    lifecycle: MatchLifecycleService = Depends(get_lifecycle_service),
) -> list[MatchSummary]:
    return await lifecycle.get_user_matches(user_id)


@router.get(
    "/expired",
    response_model=list[MatchSummary],
    summary="List the caller's expired matches",
)
async def list_expired_matches(
    user_id: uuid.UUID = Depends(get_current_user_id),
    lifecycle: MatchLifecycleService = Depends(get_lifecycle_service),
) -> list[MatchSummary]:
    return await lifecycle.get_user_expired_matches(user_id)


# ──────────────────────────────────────────────────────────────────────────────
# POST /cleanup: Manual expiry sweep
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/cleanup",
    response_model=CleanupResponse,
    summary="Run the match expiry sweep now",
)
async def run_cleanup(
    lifecycle: MatchLifecycleService = Depends(get_lifecycle_service),
) -> CleanupResponse:
    report = await lifecycle.run_cleanup()
    return CleanupResponse(
        expired_by_date=report.expired_by_date,
        expired_abandoned=report.expired_abandoned,
        total=report.total,
    )


# ──────────────────────────────────────────────────────────────────────────────
# Per-match transitions
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{match_id}/accept",
    response_model=MatchAcceptanceResponse,
    summary="Accept a match",
)
async def accept_match(
    match_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    lifecycle: MatchLifecycleService = Depends(get_lifecycle_service),
) -> MatchAcceptanceResponse:
    """Record the caller's acceptance.  When both users have accepted the
    match is confirmed and a relationship links them."""
    return await lifecycle.accept_match(user_id, match_id)


@router.post(
    "/{match_id}/decline",
    status_code=status.HTTP_204_NO_CONTENT,
    response_class=Response,
    summary="Decline a match",
)
async def decline_match(
    match_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    lifecycle: MatchLifecycleService = Depends(get_lifecycle_service),
) -> Response:
    await lifecycle.decline_match(user_id, match_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get(
    "/{match_id}/confirmation",
    response_model=MatchConfirmationResponse,
    summary="Check whether both users accepted",
)
async def check_confirmation(
    match_id: uuid.UUID,
    lifecycle: MatchLifecycleService = Depends(get_lifecycle_service),
) -> MatchConfirmationResponse:
    confirmed = await lifecycle.check_match_confirmation(match_id)
    return MatchConfirmationResponse(match_id=match_id, confirmed=confirmed)
