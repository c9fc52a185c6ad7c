"""
Resonance — Viewer-oriented match summaries.

A ``MatchResult`` row is directional; the same row is presented differently
to its session owner (side A) and to its matched user (side B).  These
helpers turn rows into ``MatchSummary`` objects from one viewer's
perspective and filter out rows that would show the viewer to themselves.
"""

from __future__ import annotations

import uuid
from typing import Iterable

import structlog

from resonance.models.matching import MatchResult
from resonance.schemas.match import MatchSummary, MatchUserProfile
from resonance.utils.clock import ensure_utc

logger = structlog.get_logger("resonance.summaries")


def counterpart_id(row: MatchResult, viewer_id: uuid.UUID) -> uuid.UUID:
    """Return the other party of *row* as seen by *viewer_id*."""
    if row.session.user_id == viewer_id:
        return row.matched_user_id
    return row.session.user_id


def build_match_summary(
    row: MatchResult,
    viewer_id: uuid.UUID,
    relationship_id: uuid.UUID | None = None,
) -> MatchSummary | None:
    """Summarise *row* for *viewer_id*.

    Returns ``None`` (and logs) when the row would present the viewer as
    their own match or when its session data is missing; both indicate an
    upstream consistency bug rather than a user error.
    """
    session = row.session
    if session is None:
        logger.error("match_missing_session", match_id=str(row.id))
        return None

    is_owner = session.user_id == viewer_id
    other = row.matched_user if is_owner else session.user
    if other is None or other.id == viewer_id:
        logger.error(
            "self_match_detected",
            match_id=str(row.id),
            viewer_id=str(viewer_id),
        )
        return None

    prompt = session.prompt
    return MatchSummary(
        id=row.id,
        question=prompt.question if prompt else "Unknown question",
        category=prompt.theme_name if prompt else "Unknown theme",
        user=other.public_name,
        user_profile=MatchUserProfile(
            id=other.id,
            username=other.username,
            name=other.display_name,
            profile_picture_url=other.profile_picture_url,
            personality_summary=other.personality_summary,
        ),
        status=row.status,
        user_accepted=row.side_a_accepted if is_owner else row.side_b_accepted,
        other_user_accepted=row.side_b_accepted if is_owner else row.side_a_accepted,
        relationship_id=relationship_id,
        compatibility_score=row.compatibility_score,
        theme_match=row.theme_match,
        question_match=row.question_match,
        deployed_at=ensure_utc(prompt.deployed_at if prompt else session.created_at),
        expires_at=ensure_utc(row.expires_at),
    )


def dedupe_by_counterpart(
    rows: Iterable[MatchResult], viewer_id: uuid.UUID
) -> list[MatchResult]:
    """Keep one row per counterpart.

    *rows* must be ordered newest first.  The newest row wins; between the
    two rows of the same pair the one anchored in the viewer's own session
    is preferred.
    """
    chosen: dict[uuid.UUID, MatchResult] = {}
    for row in rows:
        other_id = counterpart_id(row, viewer_id)
        if other_id == viewer_id:
            logger.error("self_match_detected", match_id=str(row.id), viewer_id=str(viewer_id))
            continue
        existing = chosen.get(other_id)
        if existing is None:
            chosen[other_id] = row
        elif (
            existing.pair_id == row.pair_id
            and existing.session.user_id != viewer_id
            and row.session.user_id == viewer_id
        ):
            chosen[other_id] = row
    return list(chosen.values())
