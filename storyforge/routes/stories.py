"""Story read endpoints: stories, chapters, lorebook matching."""

from fastapi import APIRouter, HTTPException, Request

from storyforge.lorebook import match_lorebook_entries
from storyforge.storage import DataUnavailableError

from .models import MatchLorebookBody

router = APIRouter()


@router.get("/stories")
async def list_stories(request: Request):
    """List all stories."""
    return request.app.state.store.list_stories()


@router.get("/stories/{story_id}/chapters")
async def get_chapters(request: Request, story_id: str):
    """Chapters of a story, in order."""
    try:
        return await request.app.state.store.get_chapters_by_story(story_id)
    except DataUnavailableError as e:
        raise HTTPException(404, str(e))


@router.post("/stories/{story_id}/lorebook/match")
async def match_lorebook(request: Request, story_id: str, body: MatchLorebookBody):
    """Lorebook entries whose name or tags appear in the given texts."""
    store = request.app.state.store
    try:
        if store.get_story(story_id) is None:
            raise HTTPException(404, "Story not found")
        entries = store.get_lorebook(story_id)
    except DataUnavailableError as e:
        raise HTTPException(404, str(e))
    return match_lorebook_entries(entries, body.texts)
