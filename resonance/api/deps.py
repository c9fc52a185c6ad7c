"""
Resonance — Shared API dependencies.

Caller identity arrives in the ``X-User-Id`` header; authenticating the
transport is the gateway's job.  Services are read from the container the
lifespan stores on ``app.state.services``.
"""

from __future__ import annotations

import uuid

from fastapi import Depends, Header, Request

from resonance.services.container import ServiceContainer
from resonance.services.matching_service import MatchLifecycleService
from resonance.services.prompt_service import PromptService


def get_current_user_id(x_user_id: uuid.UUID = Header(..., alias="X-User-Id")) -> uuid.UUID:
    return x_user_id


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


def get_lifecycle_service(
    services: ServiceContainer = Depends(get_services),
) -> MatchLifecycleService:
    return services.lifecycle


def get_prompt_service(
    services: ServiceContainer = Depends(get_services),
) -> PromptService:
    return services.prompts
