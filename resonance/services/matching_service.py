"""
Resonance — Match Lifecycle Service

Single entry point for the match lifecycle consumed by the HTTP layer, the
prompt service and the scheduler.  Orchestrates:

  • DiscoveryService  — candidate selection and bidirectional creation
  • AcceptanceService — accept / confirm / decline transitions
  • CleanupService    — date expiry, abandoned confirmations, prompt expiry

and owns the read-side queries (a user's visible and expired matches).
"""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from resonance.config import Settings, get_settings
from resonance.database import run_in_transaction
from resonance.models.matching import MatchingSession, MatchResult, MatchStatus
from resonance.schemas.match import MatchAcceptanceResponse, MatchSummary
from resonance.services.acceptance_service import AcceptanceService
from resonance.services.cleanup_service import CleanupReport, CleanupService
from resonance.services.collaborators import ConversationStore, RelationshipStore
from resonance.services.discovery_service import DiscoveryService
from resonance.services.notification_service import NotificationDispatcher
from resonance.services.summaries import (
    build_match_summary,
    counterpart_id,
    dedupe_by_counterpart,
)
from resonance.utils.clock import utcnow

logger = structlog.get_logger("resonance.matching_service")


class MatchLifecycleService:
    """Facade over discovery, acceptance and cleanup.

    Dependencies are injected at construction so tests can run the whole
    lifecycle against an in-memory database and a recording transport.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: NotificationDispatcher,
        settings: Settings | None = None,
    ) -> None:
        """Wire the lifecycle components.

        Parameters
        ----------
        session_factory:
            Factory producing the ``AsyncSession`` each unit of work runs in.
        dispatcher:
            Best-effort push notification dispatcher.
        settings:
            Overrides ``get_settings()``; mainly for tests.
        """
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self.discovery = DiscoveryService(session_factory, dispatcher, self._settings)
        self.acceptance = AcceptanceService(session_factory, dispatcher, self._settings)
        self.cleanup = CleanupService(session_factory, self._settings)

        logger.info(
            "match_lifecycle_initialised",
            match_ttl_days=self._settings.MATCH_TTL_DAYS,
            candidate_limit=self._settings.MATCH_CANDIDATE_LIMIT,
            grace_days=self._settings.CONFIRMED_MATCH_GRACE_DAYS,
        )

    # ── Discovery ─────────────────────────────────────────────────────────

    async def find_matches(
        self, user_id: uuid.UUID, prompt_id: uuid.UUID
    ) -> list[MatchSummary]:
        """Sweep stale matches, then discover new ones for *prompt_id*."""
        await self.cleanup.run()
        return await self.discovery.discover(user_id, prompt_id)

    # ── Transitions ───────────────────────────────────────────────────────

    async def accept_match(
        self, user_id: uuid.UUID, match_id: uuid.UUID
    ) -> MatchAcceptanceResponse:
        return await self.acceptance.accept_match(user_id, match_id)

    async def confirm_match(self, match_id: uuid.UUID) -> MatchAcceptanceResponse:
        return await self.acceptance.confirm_match(match_id)

    async def decline_match(self, user_id: uuid.UUID, match_id: uuid.UUID) -> None:
        await self.acceptance.decline_match(user_id, match_id)

    async def check_match_confirmation(self, match_id: uuid.UUID) -> bool:
        return await self.acceptance.check_match_confirmation(match_id)

    # ── Expiry ────────────────────────────────────────────────────────────

    async def expire_matches_for_prompt(self, prompt_id: uuid.UUID) -> int:
        return await self.cleanup.expire_matches_for_prompt(prompt_id)

    async def run_cleanup(self) -> CleanupReport:
        return await self.cleanup.run()

    # ── Queries ───────────────────────────────────────────────────────────

    async def get_user_matches(self, user_id: uuid.UUID) -> list[MatchSummary]:
        """Visible matches: unexpired, not EXPIRED, one per counterpart,
        hidden once the pair has started a conversation."""
        async def _query(db: AsyncSession) -> list[MatchSummary]:
            result = await db.execute(
                select(MatchResult)
                .join(MatchingSession, MatchResult.session_id == MatchingSession.id)
                .where(
                    or_(
                        MatchingSession.user_id == user_id,
                        MatchResult.matched_user_id == user_id,
                    ),
                    MatchResult.expires_at > utcnow(),
                    MatchResult.status != MatchStatus.EXPIRED,
                )
                .order_by(MatchResult.created_at.desc(), MatchResult.id)
            )
            rows = dedupe_by_counterpart(result.scalars().all(), user_id)

            conversations = ConversationStore(db)
            relationships = RelationshipStore(db)
            summaries: list[MatchSummary] = []
            for row in rows:
                other_id = counterpart_id(row, user_id)
                if await conversations.count_messages_between(user_id, other_id):
                    continue

                relationship_id = None
                if row.status == MatchStatus.CONFIRMED:
                    relationship = await relationships.find_relationship(user_id, other_id)
                    relationship_id = relationship.id if relationship else None

                summary = build_match_summary(row, user_id, relationship_id)
                if summary is not None:
                    summaries.append(summary)
            return summaries

        return await run_in_transaction(
            self._session_factory, _query, operation="get_user_matches"
        )

    async def get_user_expired_matches(self, user_id: uuid.UUID) -> list[MatchSummary]:
        """Expired or lapsed matches involving *user_id*, newest first, one per
        counterpart.

        A CONFIRMED match whose ``expires_at`` has passed is listed here until
        the abandoned-confirmation sweep retires it.
        """
        async def _query(db: AsyncSession) -> list[MatchSummary]:
            result = await db.execute(
                select(MatchResult)
                .join(MatchingSession, MatchResult.session_id == MatchingSession.id)
                .where(
                    or_(
                        MatchingSession.user_id == user_id,
                        MatchResult.matched_user_id == user_id,
                    ),
                    or_(
                        MatchResult.status == MatchStatus.EXPIRED,
                        MatchResult.expires_at < utcnow(),
                    ),
                )
                .order_by(MatchResult.created_at.desc(), MatchResult.id)
            )
            rows = dedupe_by_counterpart(result.scalars().all(), user_id)
            summaries = (build_match_summary(row, user_id) for row in rows)
            return [s for s in summaries if s is not None]

        return await run_in_transaction(
            self._session_factory, _query, operation="get_user_expired_matches"
        )
