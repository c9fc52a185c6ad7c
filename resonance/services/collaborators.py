"""
Resonance — Collaborator adapters.

The match lifecycle engine consumes four narrow interfaces owned by other
services: the user directory, the prompt catalog, the relationship store and
the conversation store.  Each adapter here is a thin SQLAlchemy-backed
implementation bound to the caller's ``AsyncSession`` so that reads and
writes participate in the caller's transaction.
"""

from __future__ import annotations

import uuid

from sqlalchemy import and_, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from resonance.models.message import Message
from resonance.models.prompt import DeployedPrompt, PromptStatus
from resonance.models.relationship import Relationship, RelationLevel
from resonance.models.user import User


class UserDirectory:
    """Read access to user identities."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_user(self, user_id: uuid.UUID) -> User | None:
        result = await self._db.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()


class PromptCatalog:
    """Read access to deployed prompts."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_deployed_prompt(self, prompt_id: uuid.UUID) -> DeployedPrompt | None:
        result = await self._db.execute(
            select(DeployedPrompt).where(DeployedPrompt.id == prompt_id)
        )
        return result.scalar_one_or_none()

    async def get_active_prompt_for_user(self, user_id: uuid.UUID) -> DeployedPrompt | None:
        stmt = (
            select(DeployedPrompt)
            .where(
                DeployedPrompt.user_id == user_id,
                DeployedPrompt.status == PromptStatus.ACTIVE,
            )
            .order_by(DeployedPrompt.deployed_at.desc())
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_active_prompts(
        self,
        excluding_user_id: uuid.UUID,
        question: str,
        theme_id: str,
        limit: int,
    ) -> list[DeployedPrompt]:
        """ACTIVE prompts of other users sharing the question or the theme.

        Ordered newest first with the id as a tie-breaker so repeated runs
        over the same data return the same candidates.
        """
        stmt = (
            select(DeployedPrompt)
            .where(
                DeployedPrompt.user_id != excluding_user_id,
                DeployedPrompt.status == PromptStatus.ACTIVE,
                or_(
                    DeployedPrompt.question == question,
                    DeployedPrompt.theme_id == theme_id,
                ),
            )
            .order_by(DeployedPrompt.deployed_at.desc(), DeployedPrompt.id)
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())


class RelationshipStore:
    """Lookup and creation of user-to-user relationships."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def find_relationship(
        self, user_a_id: uuid.UUID, user_b_id: uuid.UUID
    ) -> Relationship | None:
        """Return a relationship between the two users in either direction."""
        stmt = (
            select(Relationship)
            .where(
                or_(
                    and_(
                        Relationship.relating_user_id == user_a_id,
                        Relationship.related_user_id == user_b_id,
                    ),
                    and_(
                        Relationship.relating_user_id == user_b_id,
                        Relationship.related_user_id == user_a_id,
                    ),
                )
            )
            .order_by(Relationship.created_at)
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def create_relationship(
        self,
        relating_user_id: uuid.UUID,
        related_user_id: uuid.UUID,
        level: RelationLevel = RelationLevel.PUBLIC,
    ) -> Relationship:
        relationship = Relationship(
            relating_user_id=relating_user_id,
            related_user_id=related_user_id,
            relation_level=level,
        )
        self._db.add(relationship)
        await self._db.flush()
        return relationship


class ConversationStore:
    """Message counts between two users."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def count_messages_between(
        self, user_a_id: uuid.UUID, user_b_id: uuid.UUID
    ) -> int:
        stmt = select(func.count(Message.id)).where(
            or_(
                and_(Message.sender_id == user_a_id, Message.receiver_id == user_b_id),
                and_(Message.sender_id == user_b_id, Message.receiver_id == user_a_id),
            )
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one())
