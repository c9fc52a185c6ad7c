from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime
from typing import Optional

from resonance.models.matching import MatchStatus


class MatchUserProfile(BaseModel):
    id: UUID
    username: str
    name: Optional[str] = None
    profile_picture_url: Optional[str] = None
    personality_summary: Optional[str] = None


class MatchSummary(BaseModel):
    id: UUID
    question: str
    category: str
    user: str
    user_profile: MatchUserProfile
    status: MatchStatus
    user_accepted: bool
    other_user_accepted: bool
    relationship_id: Optional[UUID] = None
    compatibility_score: float = Field(ge=0.0, le=1.0)
    theme_match: bool
    question_match: bool
    deployed_at: datetime
    expires_at: datetime


class FindMatchesRequest(BaseModel):
    deployed_prompt_id: UUID


class MatchAcceptanceResponse(BaseModel):
    success: bool
    match_status: MatchStatus
    relationship_id: Optional[UUID] = None
    message: str


class MatchConfirmationResponse(BaseModel):
    match_id: UUID
    confirmed: bool


class CleanupResponse(BaseModel):
    expired_by_date: int
    expired_abandoned: int
    total: int
