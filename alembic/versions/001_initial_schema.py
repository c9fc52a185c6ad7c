"""Initial schema — the 7 Resonance match lifecycle tables.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _created_at() -> sa.Column:
    return sa.Column(
        "created_at",
        sa.DateTime(timezone=True),
        server_default=sa.func.now(),
        nullable=False,
    )


def _user_fk(name: str, **kwargs) -> sa.Column:
    return sa.Column(
        name,
        sa.Uuid(as_uuid=True),
        sa.ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        **kwargs,
    )


def upgrade() -> None:
    # ── 1. users ────────────────────────────────────────────────────
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column("username", sa.String, unique=True, index=True, nullable=False),
        sa.Column("display_name", sa.String, nullable=True),
        sa.Column("profile_picture_url", sa.String, nullable=True),
        sa.Column("personality_summary", sa.Text, nullable=True),
        _created_at(),
        sa.Column("is_active", sa.Boolean, server_default="true", nullable=False),
    )

    # ── 2. deployed_prompts ─────────────────────────────────────────
    op.create_table(
        "deployed_prompts",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        _user_fk("user_id", index=True),
        sa.Column("theme_id", sa.String, nullable=False),
        sa.Column("theme_name", sa.String, nullable=False),
        sa.Column("question", sa.Text, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, comment="ACTIVE | EXPIRED | CANCELLED"),
        sa.Column(
            "deployed_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(
        "ix_deployed_prompts_status_theme", "deployed_prompts", ["status", "theme_id"]
    )

    # ── 3. matching_sessions ────────────────────────────────────────
    op.create_table(
        "matching_sessions",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        _user_fk("user_id", index=True),
        sa.Column(
            "prompt_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("deployed_prompts.id", ondelete="CASCADE"),
            index=True,
            nullable=False,
        ),
        sa.Column("status", sa.String(16), nullable=False),
        _created_at(),
        sa.UniqueConstraint("user_id", "prompt_id", name="uq_matching_session_user_prompt"),
    )

    # ── 4. match_results ────────────────────────────────────────────
    op.create_table(
        "match_results",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        sa.Column(
            "pair_id",
            sa.Uuid(as_uuid=True),
            index=True,
            nullable=False,
            comment="Shared by the two directional rows of one logical match",
        ),
        sa.Column(
            "session_id",
            sa.Uuid(as_uuid=True),
            sa.ForeignKey("matching_sessions.id", ondelete="CASCADE"),
            index=True,
            nullable=False,
        ),
        _user_fk("matched_user_id", index=True),
        sa.Column("compatibility_score", sa.Float, nullable=False),
        sa.Column("theme_match", sa.Boolean, nullable=False),
        sa.Column("question_match", sa.Boolean, nullable=False),
        sa.Column("personality_match", sa.Boolean, nullable=False),
        sa.Column("location_match", sa.Boolean, nullable=False),
        sa.Column(
            "status",
            sa.String(16),
            nullable=False,
            comment="PENDING | CONFIRMED | EXPIRED | DECLINED",
        ),
        sa.Column("side_a_accepted", sa.Boolean, nullable=False),
        sa.Column("side_b_accepted", sa.Boolean, nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("confirmed_at", sa.DateTime(timezone=True), nullable=True),
        _created_at(),
        sa.UniqueConstraint("session_id", "matched_user_id", name="uq_match_result_session_user"),
    )
    op.create_index(
        "ix_match_results_status_expires", "match_results", ["status", "expires_at"]
    )

    # ── 5. relationships ────────────────────────────────────────────
    op.create_table(
        "relationships",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        _user_fk("relating_user_id", index=True),
        _user_fk("related_user_id", index=True),
        sa.Column("relation_level", sa.String(16), nullable=False, comment="PUBLIC | PRIVATE"),
        _created_at(),
    )

    # ── 6. user_match_history ───────────────────────────────────────
    op.create_table(
        "user_match_history",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        _user_fk("user_id", index=True),
        _user_fk("matched_user_id", index=True),
        sa.Column("match_type", sa.String(16), nullable=False, comment="ACCEPTED | DECLINED"),
        _created_at(),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("user_id", "matched_user_id", name="uq_match_history_pair"),
    )

    # ── 7. messages ─────────────────────────────────────────────────
    op.create_table(
        "messages",
        sa.Column("id", sa.Uuid(as_uuid=True), primary_key=True),
        _user_fk("sender_id"),
        _user_fk("receiver_id"),
        sa.Column("content", sa.Text, nullable=False),
        _created_at(),
    )
    op.create_index(
        "ix_messages_sender_receiver", "messages", ["sender_id", "receiver_id"]
    )


def downgrade() -> None:
    op.drop_index("ix_messages_sender_receiver", table_name="messages")
    op.drop_table("messages")
    op.drop_table("user_match_history")
    op.drop_table("relationships")
    op.drop_index("ix_match_results_status_expires", table_name="match_results")
    op.drop_table("match_results")
    op.drop_table("matching_sessions")
    op.drop_index("ix_deployed_prompts_status_theme", table_name="deployed_prompts")
    op.drop_table("deployed_prompts")
    op.drop_table("users")
