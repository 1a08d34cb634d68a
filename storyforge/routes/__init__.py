"""FastAPI API endpoints under /api.

Endpoint groups: settings + health, stories (chapters, lorebook matching),
prompts (listing, preview), generation (stream, abort, models).

The store, prompt parser and generation service live on app.state; see
storyforge.app.create_app().
"""

from fastapi import APIRouter

from .generation import router as generation_router
from .prompts import router as prompts_router
from .settings import router as settings_router
from .stories import router as stories_router

router = APIRouter()
router.include_router(settings_router)
router.include_router(stories_router)
router.include_router(prompts_router)
router.include_router(generation_router)
