from pydantic import BaseModel, Field
from uuid import UUID
from datetime import datetime

from resonance.models.prompt import PromptStatus


class PromptDeployRequest(BaseModel):
    theme_id: str = Field(min_length=1)
    theme_name: str = Field(min_length=1)
    question: str = Field(min_length=1, max_length=500)


class DeployedPromptResponse(BaseModel):
    id: UUID
    user_id: UUID
    theme_id: str
    theme_name: str
    question: str
    status: PromptStatus
    deployed_at: datetime
    expires_at: datetime

    model_config = {"from_attributes": True}


class PromptCancelResponse(BaseModel):
    success: bool
    expired_matches: int
