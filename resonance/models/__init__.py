"""
Resonance — ORM model registry.

Importing every model here ensures that Alembic (and any other tool that
inspects ``Base.metadata``) discovers all tables automatically.
"""

from resonance.models.user import User
from resonance.models.prompt import DeployedPrompt, PromptStatus
from resonance.models.matching import (
    MatchingSession,
    MatchResult,
    MatchStatus,
    MatchType,
    SessionStatus,
    UserMatchHistory,
)
from resonance.models.relationship import Relationship, RelationLevel
from resonance.models.message import Message

__all__ = [
    "User",
    "DeployedPrompt",
    "PromptStatus",
    "MatchingSession",
    "MatchResult",
    "MatchStatus",
    "MatchType",
    "SessionStatus",
    "UserMatchHistory",
    "Relationship",
    "RelationLevel",
    "Message",
]
