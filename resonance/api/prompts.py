"""
Resonance — Deployed Prompt API
"""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, status

from resonance.api.deps import get_current_user_id, get_prompt_service
from resonance.schemas.prompt import (
    DeployedPromptResponse,
    PromptCancelResponse,
    PromptDeployRequest,
)
from resonance.services.prompt_service import PromptService

router = APIRouter()


@router.get(
    "/active",
    response_model=DeployedPromptResponse | None,
    summary="Get the caller's active prompt",
)
async def get_active_prompt(
    user_id: uuid.UUID = Depends(get_current_user_id),
    prompts: PromptService = Depends(get_prompt_service),
) -> DeployedPromptResponse | None:
    prompt = await prompts.get_active_prompt(user_id)
    if prompt is None:
        return None
    return DeployedPromptResponse.model_validate(prompt)


@router.post(
    "",
    response_model=DeployedPromptResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Deploy a prompt",
)
async def deploy_prompt(
    body: PromptDeployRequest,
    user_id: uuid.UUID = Depends(get_current_user_id),
    prompts: PromptService = Depends(get_prompt_service),
) -> DeployedPromptResponse:
    """Deploy a new prompt, superseding the caller's active one.  Matching
    against other users' prompts starts in the background."""
    prompt = await prompts.deploy_prompt(
        user_id, body.theme_id, body.theme_name, body.question
    )
    return DeployedPromptResponse.model_validate(prompt)


@router.patch(
    "/{prompt_id}/cancel",
    response_model=PromptCancelResponse,
    summary="Cancel a deployed prompt",
)
async def cancel_prompt(
    prompt_id: uuid.UUID,
    user_id: uuid.UUID = Depends(get_current_user_id),
    prompts: PromptService = Depends(get_prompt_service),
) -> PromptCancelResponse:
    expired = await prompts.cancel_prompt(user_id, prompt_id)
    return PromptCancelResponse(success=True, expired_matches=expired)
