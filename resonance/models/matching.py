"""
Resonance — MatchingSession, MatchResult and UserMatchHistory models.

A logical match between two users is stored as two ``MatchResult`` rows:
one anchored in each user's ``MatchingSession`` and pointing at the other
user.  Both rows share a ``pair_id`` so lifecycle transitions can be applied
to the pair as a unit.
"""

import enum
import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from resonance.database import Base
from resonance.utils.clock import utcnow


class SessionStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"


class MatchStatus(str, enum.Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    EXPIRED = "EXPIRED"
    DECLINED = "DECLINED"


class MatchType(str, enum.Enum):
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"


class MatchingSession(Base):
    __tablename__ = "matching_sessions"
    __table_args__ = (
        UniqueConstraint("user_id", "prompt_id", name="uq_matching_session_user_prompt"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    prompt_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("deployed_prompts.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, native_enum=False, length=16, name="session_status"),
        default=SessionStatus.ACTIVE,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    user: Mapped["User"] = relationship("User", lazy="selectin")
    prompt: Mapped["DeployedPrompt"] = relationship("DeployedPrompt", lazy="selectin")

    def __repr__(self) -> str:
        return f"<MatchingSession {self.id} user={self.user_id} prompt={self.prompt_id}>"


class MatchResult(Base):
    __tablename__ = "match_results"
    __table_args__ = (
        UniqueConstraint("session_id", "matched_user_id", name="uq_match_result_session_user"),
        Index("ix_match_results_status_expires", "status", "expires_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    pair_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), index=True, nullable=False,
        comment="Shared by the two directional rows of one logical match",
    )
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("matching_sessions.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )
    matched_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    compatibility_score: Mapped[float] = mapped_column(Float, nullable=False)
    theme_match: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    question_match: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    personality_match: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    location_match: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    status: Mapped[MatchStatus] = mapped_column(
        Enum(MatchStatus, native_enum=False, length=16, name="match_status"),
        default=MatchStatus.PENDING,
        nullable=False,
    )
    side_a_accepted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    side_b_accepted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    confirmed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    session: Mapped["MatchingSession"] = relationship("MatchingSession", lazy="selectin")
    matched_user: Mapped["User"] = relationship(
        "User", foreign_keys=[matched_user_id], lazy="selectin"
    )

    @property
    def owner_id(self) -> uuid.UUID:
        """Side A: the user whose session anchors this row."""
        return self.session.user_id

    def __repr__(self) -> str:
        return (
            f"<MatchResult {self.id} pair={self.pair_id} "
            f"matched={self.matched_user_id} status={self.status.value}>"
        )


class UserMatchHistory(Base):
    __tablename__ = "user_match_history"
    __table_args__ = (
        UniqueConstraint("user_id", "matched_user_id", name="uq_match_history_pair"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    matched_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False
    )
    match_type: Mapped[MatchType] = mapped_column(
        Enum(MatchType, native_enum=False, length=16, name="match_type"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), onupdate=utcnow, nullable=True
    )

    def __repr__(self) -> str:
        return (
            f"<UserMatchHistory {self.user_id} -> {self.matched_user_id} "
            f"type={self.match_type.value}>"
        )
