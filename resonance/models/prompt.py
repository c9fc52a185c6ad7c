"""
Resonance — DeployedPrompt model.

A deployed prompt is a user's currently active question/theme pairing.  The
prompt catalog owns its lifecycle; the matching engine only reads it and
expires matches when it leaves ``ACTIVE``.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from resonance.database import Base
from resonance.utils.clock import utcnow


class PromptStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class DeployedPrompt(Base):
    __tablename__ = "deployed_prompts"
    __table_args__ = (
        Index("ix_deployed_prompts_status_theme", "status", "theme_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    theme_id: Mapped[str] = mapped_column(String, nullable=False)
    theme_name: Mapped[str] = mapped_column(String, nullable=False)
    question: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[PromptStatus] = mapped_column(
        Enum(PromptStatus, native_enum=False, length=16, name="prompt_status"),
        default=PromptStatus.ACTIVE,
        nullable=False,
    )
    deployed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    user: Mapped["User"] = relationship(
        "User", back_populates="deployed_prompts", lazy="selectin"
    )

    def __repr__(self) -> str:
        return (
            f"<DeployedPrompt {self.id} user={self.user_id} "
            f"theme={self.theme_id!r} status={self.status.value}>"
        )
