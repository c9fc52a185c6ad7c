"""
Resonance — Main API Router

Aggregates all sub-routers so that ``resonance.main`` can mount the entire
HTTP surface with one ``include_router`` call.
"""

from fastapi import APIRouter

from resonance.api import matching, prompts

router = APIRouter()

router.include_router(matching.router, prefix="/matches", tags=["Matching"])
router.include_router(prompts.router, prefix="/prompts", tags=["Prompts"])
