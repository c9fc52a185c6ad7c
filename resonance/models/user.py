"""
Resonance — User model.

Users are owned by the external identity service; this table mirrors the
fields the match lifecycle needs to reference and display.
"""

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from resonance.database import Base
from resonance.utils.clock import utcnow


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    username: Mapped[str] = mapped_column(
        String, unique=True, index=True, nullable=False
    )
    display_name: Mapped[str | None] = mapped_column(String, nullable=True)
    profile_picture_url: Mapped[str | None] = mapped_column(String, nullable=True)
    personality_summary: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true", nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    deployed_prompts: Mapped[list["DeployedPrompt"]] = relationship(
        "DeployedPrompt", back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def public_name(self) -> str:
        return self.display_name or self.username or "Anonymous"

    def __repr__(self) -> str:
        return f"<User {self.username!r} id={self.id}>"
