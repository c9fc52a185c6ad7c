"""
Resonance — Match Expiry Sweeps

Two passes, both idempotent and safe to run repeatedly or concurrently:

  1. Date expiry: PENDING rows whose ``expires_at`` has passed move to
     EXPIRED.
  2. Abandoned confirmations: CONFIRMED pairs created more than
     CONFIRMED_MATCH_GRACE_DAYS ago whose users have never exchanged a
     message move to EXPIRED with ``expires_at = now``.

Also hosts the prompt-driven expiry used when a prompt is cancelled,
superseded or lapses.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from resonance.config import Settings, get_settings
from resonance.database import run_in_transaction
from resonance.models.matching import MatchingSession, MatchResult, MatchStatus
from resonance.services.collaborators import ConversationStore
from resonance.utils.clock import days_ago, utcnow

logger = structlog.get_logger("resonance.cleanup_service")


@dataclass(frozen=True)
class CleanupReport:
    expired_by_date: int
    expired_abandoned: int

    @property
    def total(self) -> int:
        return self.expired_by_date + self.expired_abandoned


class CleanupService:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()

    async def run(self) -> CleanupReport:
        """Run both passes and report how many rows each one expired."""
        report = CleanupReport(
            expired_by_date=await self.expire_by_date(),
            expired_abandoned=await self.expire_abandoned_confirmations(),
        )
        if report.total:
            logger.info(
                "match_cleanup_completed",
                expired_by_date=report.expired_by_date,
                expired_abandoned=report.expired_abandoned,
            )
        return report

    async def expire_by_date(self) -> int:
        async def _sweep(db: AsyncSession) -> int:
            result = await db.execute(
                update(MatchResult)
                .where(
                    MatchResult.status == MatchStatus.PENDING,
                    MatchResult.expires_at < utcnow(),
                )
                .values(status=MatchStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

        return await run_in_transaction(
            self._session_factory, _sweep, operation="expire_matches_by_date"
        )

    async def expire_abandoned_confirmations(self) -> int:
        """Expire confirmed pairs older than the grace window with no messages."""
        async def _sweep(db: AsyncSession) -> int:
            cutoff = days_ago(self._settings.CONFIRMED_MATCH_GRACE_DAYS)
            result = await db.execute(
                select(MatchResult)
                .where(
                    MatchResult.status == MatchStatus.CONFIRMED,
                    MatchResult.created_at < cutoff,
                )
                .order_by(MatchResult.created_at)
            )
            conversations = ConversationStore(db)
            seen_pairs: set[uuid.UUID] = set()
            expired = 0
            for match in result.scalars().all():
                if match.pair_id in seen_pairs:
                    continue
                seen_pairs.add(match.pair_id)

                messages = await conversations.count_messages_between(
                    match.session.user_id, match.matched_user_id
                )
                if messages:
                    continue

                updated = await db.execute(
                    update(MatchResult)
                    .where(
                        MatchResult.pair_id == match.pair_id,
                        MatchResult.status == MatchStatus.CONFIRMED,
                    )
                    .values(status=MatchStatus.EXPIRED, expires_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                expired += updated.rowcount or 0
            return expired

        return await run_in_transaction(
            self._session_factory, _sweep, operation="expire_abandoned_matches"
        )

    async def expire_matches_for_prompt(self, prompt_id: uuid.UUID) -> int:
        """Expire every PENDING match anchored in *prompt_id*'s sessions.

        The twin rows in the counterparts' sessions are expired with them.
        Returns the number of matches (pairs) expired.
        """
        async def _expire(db: AsyncSession) -> int:
            result = await db.execute(
                select(MatchResult.pair_id)
                .join(MatchingSession, MatchResult.session_id == MatchingSession.id)
                .where(
                    MatchingSession.prompt_id == prompt_id,
                    MatchResult.status == MatchStatus.PENDING,
                )
            )
            pair_ids = set(result.scalars().all())
            if not pair_ids:
                return 0

            await db.execute(
                update(MatchResult)
                .where(
                    MatchResult.pair_id.in_(pair_ids),
                    MatchResult.status == MatchStatus.PENDING,
                )
                .values(status=MatchStatus.EXPIRED)
                .execution_options(synchronize_session=False)
            )
            return len(pair_ids)

        count = await run_in_transaction(
            self._session_factory, _expire, operation="expire_matches_for_prompt"
        )
        logger.info("prompt_matches_expired", prompt_id=str(prompt_id), count=count)
        return count
