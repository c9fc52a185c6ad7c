"""
Resonance — Candidate Discovery & Bidirectional Match Creation

Given a user's deployed prompt, discovery:
  1. Locates (or creates) the user's MatchingSession for that prompt.
  2. Lists up to MATCH_CANDIDATE_LIMIT ACTIVE prompts of other users that
     share the question or the theme, newest first.
  3. Drops every candidate the user has ever been paired with: an existing
     MatchResult in either direction, or a UserMatchHistory decision in
     either direction.
  4. For each surviving candidate, atomically writes both directional
     MatchResult rows (one in each user's session) sharing a ``pair_id``.

Compatibility is a pure function of the two prompts:
  score = min(1, SCORE_BASE + SCORE_QUESTION_BONUS·[same question]
                            + SCORE_THEME_BONUS·[same theme])

A failure while creating one candidate's match is logged and the batch
continues; the candidate's pair is simply not created.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from resonance.config import Settings, get_settings
from resonance.database import run_in_transaction
from resonance.models.matching import (
    MatchingSession,
    MatchResult,
    MatchStatus,
    SessionStatus,
    UserMatchHistory,
)
from resonance.models.prompt import DeployedPrompt, PromptStatus
from resonance.schemas.match import MatchSummary
from resonance.services.collaborators import PromptCatalog
from resonance.services.errors import InvalidStateError, NotFoundError
from resonance.services.notification_service import NotificationDispatcher
from resonance.services.summaries import build_match_summary
from resonance.utils.clock import days_from_now

logger = structlog.get_logger("resonance.discovery_service")


@dataclass(frozen=True)
class _DiscoveryPlan:
    prompt: DeployedPrompt
    session_id: uuid.UUID
    candidates: list[DeployedPrompt]


def calculate_compatibility(
    prompt_a: DeployedPrompt,
    prompt_b: DeployedPrompt,
    settings: Settings | None = None,
) -> tuple[float, bool, bool]:
    """Score two prompts.

    Returns
    -------
    tuple[float, bool, bool]
        ``(score, question_match, theme_match)`` with the score clamped to
        ``[0, 1]``.
    """
    settings = settings or get_settings()
    question_match = prompt_a.question == prompt_b.question
    theme_match = prompt_a.theme_id == prompt_b.theme_id

    score = settings.SCORE_BASE
    if question_match:
        score += settings.SCORE_QUESTION_BONUS
    if theme_match:
        score += settings.SCORE_THEME_BONUS
    return min(1.0, max(0.0, score)), question_match, theme_match


class DiscoveryService:
    """Finds candidates for a deployed prompt and creates match pairs."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: NotificationDispatcher,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._settings = settings or get_settings()

    # ── Public API ────────────────────────────────────────────────────────

    async def discover(
        self, user_id: uuid.UUID, prompt_id: uuid.UUID
    ) -> list[MatchSummary]:
        """Create matches for *prompt_id* and return them from the caller's side.

        Raises
        ------
        NotFoundError
            The prompt does not exist.
        InvalidStateError
            The prompt belongs to another user.
        """
        log = logger.bind(user_id=str(user_id), prompt_id=str(prompt_id))

        plan = await self._prepare(user_id, prompt_id)
        if plan is None:
            return []

        log.info("discovery_candidates_selected", candidates=len(plan.candidates))

        summaries: list[MatchSummary] = []
        for candidate in plan.candidates:
            try:
                row_a, row_b = await self.create_bidirectional_match(
                    user_id, plan.prompt, plan.session_id, candidate
                )
            except Exception:
                log.exception(
                    "candidate_match_creation_failed",
                    candidate_user_id=str(candidate.user_id),
                    candidate_prompt_id=str(candidate.id),
                )
                continue

            summary_a = build_match_summary(row_a, user_id)
            summary_b = build_match_summary(row_b, candidate.user_id)
            if summary_a is not None:
                summaries.append(summary_a)
                self._dispatcher.new_match_available(user_id, summary_a.model_dump(mode="json"))
            if summary_b is not None:
                self._dispatcher.new_match_available(
                    candidate.user_id, summary_b.model_dump(mode="json")
                )

        log.info("discovery_completed", created=len(summaries))
        return summaries

    async def create_bidirectional_match(
        self,
        user_id: uuid.UUID,
        user_prompt: DeployedPrompt,
        session_id: uuid.UUID,
        candidate: DeployedPrompt,
    ) -> tuple[MatchResult, MatchResult]:
        """Write both directional rows for one candidate in one transaction.

        Row A lives in the caller's session and points at the candidate; row
        B lives in the candidate's session (for the candidate's own prompt)
        and points back at the caller.  Both rows carry the same pair id,
        score, match flags and expiry.
        """
        if candidate.user_id == user_id:
            raise InvalidStateError("A user cannot be matched with themselves")

        score, question_match, theme_match = calculate_compatibility(
            user_prompt, candidate, self._settings
        )

        async def _create(db: AsyncSession) -> tuple[MatchResult, MatchResult]:
            pair_id = uuid.uuid4()
            expires_at = days_from_now(self._settings.MATCH_TTL_DAYS)
            shared = dict(
                pair_id=pair_id,
                compatibility_score=score,
                theme_match=theme_match,
                question_match=question_match,
                personality_match=False,
                location_match=False,
                status=MatchStatus.PENDING,
                side_a_accepted=False,
                side_b_accepted=False,
                expires_at=expires_at,
            )

            db.add(MatchResult(session_id=session_id, matched_user_id=candidate.user_id, **shared))
            candidate_session = await self.locate_or_create_session(
                db, candidate.user_id, candidate.id
            )
            db.add(MatchResult(session_id=candidate_session.id, matched_user_id=user_id, **shared))
            await db.flush()

            result = await db.execute(
                select(MatchResult)
                .where(MatchResult.pair_id == pair_id)
                .execution_options(populate_existing=True)
            )
            rows = {row.session_id: row for row in result.scalars().all()}
            return rows[session_id], rows[candidate_session.id]

        row_a, row_b = await run_in_transaction(
            self._session_factory, _create, operation="create_match_pair"
        )
        logger.info(
            "match_pair_created",
            pair_id=str(row_a.pair_id),
            user_id=str(user_id),
            candidate_user_id=str(candidate.user_id),
            compatibility_score=score,
        )
        return row_a, row_b

    @staticmethod
    async def locate_or_create_session(
        db: AsyncSession, user_id: uuid.UUID, prompt_id: uuid.UUID
    ) -> MatchingSession:
        """Return the user's session for *prompt_id*, creating it if absent.

        A concurrent creator surfaces as an ``IntegrityError`` on the unique
        (user_id, prompt_id) constraint; callers retry in a fresh transaction.
        """
        result = await db.execute(
            select(MatchingSession).where(
                MatchingSession.user_id == user_id,
                MatchingSession.prompt_id == prompt_id,
            )
        )
        session = result.scalar_one_or_none()
        if session is not None:
            return session

        session = MatchingSession(
            user_id=user_id, prompt_id=prompt_id, status=SessionStatus.ACTIVE
        )
        db.add(session)
        await db.flush()
        return session

    async def build_exclusion_set(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        session_id: uuid.UUID,
        candidate_user_ids: list[uuid.UUID],
    ) -> set[uuid.UUID]:
        """Candidate user ids the caller has ever been paired with."""
        if not candidate_user_ids:
            return set()

        excluded: set[uuid.UUID] = set()

        # Matches anchored in the caller's session
        result = await db.execute(
            select(MatchResult.matched_user_id).where(
                MatchResult.session_id == session_id,
                MatchResult.matched_user_id.in_(candidate_user_ids),
            )
        )
        excluded.update(result.scalars().all())

        # Matches anchored in a candidate's session pointing at the caller
        result = await db.execute(
            select(MatchingSession.user_id)
            .join(MatchResult, MatchResult.session_id == MatchingSession.id)
            .where(
                MatchResult.matched_user_id == user_id,
                MatchingSession.user_id.in_(candidate_user_ids),
            )
        )
        excluded.update(result.scalars().all())

        # Accept/decline decisions in either direction
        result = await db.execute(
            select(UserMatchHistory.user_id, UserMatchHistory.matched_user_id).where(
                or_(
                    and_(
                        UserMatchHistory.user_id == user_id,
                        UserMatchHistory.matched_user_id.in_(candidate_user_ids),
                    ),
                    and_(
                        UserMatchHistory.matched_user_id == user_id,
                        UserMatchHistory.user_id.in_(candidate_user_ids),
                    ),
                )
            )
        )
        for owner_id, matched_id in result.all():
            excluded.add(matched_id if owner_id == user_id else owner_id)

        return excluded

    # ── Internals ─────────────────────────────────────────────────────────

    async def _prepare(
        self, user_id: uuid.UUID, prompt_id: uuid.UUID
    ) -> _DiscoveryPlan | None:
        async def _plan(db: AsyncSession) -> _DiscoveryPlan | None:
            catalog = PromptCatalog(db)
            prompt = await catalog.get_deployed_prompt(prompt_id)
            if prompt is None:
                raise NotFoundError(f"Deployed prompt {prompt_id} not found")
            if prompt.user_id != user_id:
                raise InvalidStateError(
                    f"Deployed prompt {prompt_id} does not belong to user {user_id}"
                )
            if prompt.status != PromptStatus.ACTIVE:
                logger.info(
                    "discovery_skipped_inactive_prompt",
                    prompt_id=str(prompt_id),
                    status=prompt.status.value,
                )
                return None

            session = await self.locate_or_create_session(db, user_id, prompt.id)

            listed = await catalog.list_active_prompts(
                excluding_user_id=user_id,
                question=prompt.question,
                theme_id=prompt.theme_id,
                limit=self._settings.MATCH_CANDIDATE_LIMIT,
            )
            # One prompt per candidate user; the newest wins.
            unique: dict[uuid.UUID, DeployedPrompt] = {}
            for candidate in listed:
                unique.setdefault(candidate.user_id, candidate)

            excluded = await self.build_exclusion_set(
                db, user_id, session.id, list(unique)
            )
            survivors = [c for uid, c in unique.items() if uid not in excluded]
            if excluded:
                logger.info(
                    "discovery_candidates_excluded",
                    user_id=str(user_id),
                    excluded=len(excluded),
                )
            return _DiscoveryPlan(prompt=prompt, session_id=session.id, candidates=survivors)

        try:
            return await run_in_transaction(
                self._session_factory, _plan, operation="prepare_discovery"
            )
        except IntegrityError:
            # Another request created the caller's session first.
            logger.info("matching_session_race", user_id=str(user_id), prompt_id=str(prompt_id))
            return await run_in_transaction(
                self._session_factory, _plan, operation="prepare_discovery"
            )
