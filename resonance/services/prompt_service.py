"""
Resonance — Prompt Lifecycle

Deploying a prompt:
  1. Lapsed ACTIVE prompts of the user are moved to EXPIRED.
  2. Any prompt that is still ACTIVE is superseded (EXPIRED).
  3. The new prompt is created with a PROMPT_TTL_DAYS expiration.
  4. Matches of every prompt that left ACTIVE are expired.
  5. Discovery for the new prompt is started in the background.

Cancelling moves an ACTIVE prompt to CANCELLED and expires its matches.
Match expiry after a prompt transition is best-effort: the prompt
transition has already committed and is not undone.
"""

from __future__ import annotations

import uuid

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from resonance.config import Settings, get_settings
from resonance.database import run_in_transaction
from resonance.models.prompt import DeployedPrompt, PromptStatus
from resonance.services.background import BackgroundTaskRunner
from resonance.services.collaborators import PromptCatalog, UserDirectory
from resonance.services.errors import NotFoundError
from resonance.services.matching_service import MatchLifecycleService
from resonance.utils.clock import days_from_now, utcnow

logger = structlog.get_logger("resonance.prompt_service")


class PromptService:
    """Deploy, cancel and look up a user's deployed prompt."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lifecycle: MatchLifecycleService,
        runner: BackgroundTaskRunner,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lifecycle = lifecycle
        self._runner = runner
        self._settings = settings or get_settings()

    # ── Public API ────────────────────────────────────────────────────────

    async def get_active_prompt(self, user_id: uuid.UUID) -> DeployedPrompt | None:
        """Return the user's unexpired ACTIVE prompt, expiring lapsed ones first."""
        await self.expire_lapsed_prompts(user_id)

        async def _lookup(db: AsyncSession) -> DeployedPrompt | None:
            return await PromptCatalog(db).get_active_prompt_for_user(user_id)

        return await run_in_transaction(
            self._session_factory, _lookup, operation="get_active_prompt"
        )

    async def deploy_prompt(
        self,
        user_id: uuid.UUID,
        theme_id: str,
        theme_name: str,
        question: str,
    ) -> DeployedPrompt:
        """Deploy a new prompt for *user_id* and start discovery for it.

        Raises
        ------
        NotFoundError
            The user does not exist.
        """
        await self.expire_lapsed_prompts(user_id)

        async def _deploy(db: AsyncSession) -> tuple[DeployedPrompt, list[uuid.UUID]]:
            if await UserDirectory(db).get_user(user_id) is None:
                raise NotFoundError(f"User {user_id} not found")

            superseded = await self._transition_active(
                db, user_id, PromptStatus.EXPIRED
            )
            now = utcnow()
            prompt = DeployedPrompt(
                user_id=user_id,
                theme_id=theme_id,
                theme_name=theme_name,
                question=question,
                status=PromptStatus.ACTIVE,
                deployed_at=now,
                expires_at=days_from_now(self._settings.PROMPT_TTL_DAYS, now),
            )
            db.add(prompt)
            await db.flush()
            return prompt, superseded

        prompt, superseded = await run_in_transaction(
            self._session_factory, _deploy, operation="deploy_prompt"
        )
        logger.info(
            "prompt_deployed",
            user_id=str(user_id),
            prompt_id=str(prompt.id),
            theme_id=theme_id,
            superseded=len(superseded),
        )

        for old_prompt_id in superseded:
            await self._expire_matches_quietly(old_prompt_id)

        self._runner.spawn(
            self._discover(user_id, prompt.id), label=f"discover:{prompt.id}"
        )
        return prompt

    async def cancel_prompt(self, user_id: uuid.UUID, prompt_id: uuid.UUID) -> int:
        """Cancel the user's ACTIVE prompt and return how many matches expired.

        Raises
        ------
        NotFoundError
            No ACTIVE prompt with that id belongs to the user.
        """
        async def _cancel(db: AsyncSession) -> int:
            result = await db.execute(
                update(DeployedPrompt)
                .where(
                    DeployedPrompt.id == prompt_id,
                    DeployedPrompt.user_id == user_id,
                    DeployedPrompt.status == PromptStatus.ACTIVE,
                )
                .values(status=PromptStatus.CANCELLED)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount or 0

        updated = await run_in_transaction(
            self._session_factory, _cancel, operation="cancel_prompt"
        )
        if not updated:
            raise NotFoundError(f"Active deployed prompt {prompt_id} not found")

        logger.info("prompt_cancelled", user_id=str(user_id), prompt_id=str(prompt_id))
        return await self._expire_matches_quietly(prompt_id)

    async def expire_lapsed_prompts(self, user_id: uuid.UUID) -> list[uuid.UUID]:
        """Move the user's ACTIVE prompts past ``expires_at`` to EXPIRED."""
        async def _expire(db: AsyncSession) -> list[uuid.UUID]:
            result = await db.execute(
                select(DeployedPrompt.id).where(
                    DeployedPrompt.user_id == user_id,
                    DeployedPrompt.status == PromptStatus.ACTIVE,
                    DeployedPrompt.expires_at < utcnow(),
                )
            )
            lapsed = list(result.scalars().all())
            if lapsed:
                await db.execute(
                    update(DeployedPrompt)
                    .where(DeployedPrompt.id.in_(lapsed))
                    .values(status=PromptStatus.EXPIRED)
                    .execution_options(synchronize_session=False)
                )
            return lapsed

        lapsed = await run_in_transaction(
            self._session_factory, _expire, operation="expire_lapsed_prompts"
        )
        for prompt_id in lapsed:
            logger.info("prompt_lapsed", user_id=str(user_id), prompt_id=str(prompt_id))
            await self._expire_matches_quietly(prompt_id)
        return lapsed

    # ── Internals ─────────────────────────────────────────────────────────

    @staticmethod
    async def _transition_active(
        db: AsyncSession, user_id: uuid.UUID, status: PromptStatus
    ) -> list[uuid.UUID]:
        result = await db.execute(
            select(DeployedPrompt.id).where(
                DeployedPrompt.user_id == user_id,
                DeployedPrompt.status == PromptStatus.ACTIVE,
            )
        )
        ids = list(result.scalars().all())
        if ids:
            await db.execute(
                update(DeployedPrompt)
                .where(DeployedPrompt.id.in_(ids))
                .values(status=status)
                .execution_options(synchronize_session=False)
            )
        return ids

    async def _expire_matches_quietly(self, prompt_id: uuid.UUID) -> int:
        try:
            return await self._lifecycle.expire_matches_for_prompt(prompt_id)
        except Exception:
            logger.exception("prompt_match_expiry_failed", prompt_id=str(prompt_id))
            return 0

    async def _discover(self, user_id: uuid.UUID, prompt_id: uuid.UUID) -> None:
        matches = await self._lifecycle.find_matches(user_id, prompt_id)
        logger.info(
            "background_discovery_completed",
            user_id=str(user_id),
            prompt_id=str(prompt_id),
            matches=len(matches),
        )
