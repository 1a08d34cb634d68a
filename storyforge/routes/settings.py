"""Health check and AI settings endpoints."""

from fastapi import APIRouter, Request

from storyforge.llm import GenerationService

from .models import UpdateKeyBody

router = APIRouter()


@router.get("/health")
async def health():
    """Health check."""
    return {"status": "ok"}


@router.get("/settings")
async def get_settings(request: Request):
    """Get AI settings (keys, local URL, default and available models)."""
    return request.app.state.store.get_settings()


@router.patch("/settings")
async def update_settings(request: Request, body: dict):
    """Update AI settings (partial merge). Providers pick up new keys at once."""
    settings = request.app.state.store.update_settings(body)
    service: GenerationService = request.app.state.service
    service.apply_settings(settings)
    return settings


@router.put("/settings/key")
async def update_key(request: Request, body: UpdateKeyBody):
    """Set one provider's API key."""
    service: GenerationService = request.app.state.service
    service.update_key(body.provider, body.key)
    return {"ok": True}
