"""Prompt listing and dry-run preview endpoints."""

from fastapi import APIRouter, HTTPException, Request

from storyforge.models import ParsedPrompt, ParserConfig
from storyforge.pipeline import preview_prompt
from storyforge.storage import DataUnavailableError

router = APIRouter()


@router.get("/prompts")
async def list_prompts(request: Request):
    """All prompts, user prompts overriding bundled presets."""
    return request.app.state.store.list_prompts()


@router.post("/prompts/preview")
async def preview(request: Request, body: ParserConfig) -> ParsedPrompt:
    """Render a prompt without generating.

    Template problems come back as {"error": ...} with status 200; a missing
    story is a 404.
    """
    try:
        return await preview_prompt(request.app.state.parser, body)
    except DataUnavailableError as e:
        raise HTTPException(404, str(e))
