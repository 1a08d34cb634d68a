"""FastMCP server exposing prompt preview as MCP tools.

Tools:
  - list_chapters(story_id)          — chapters of a story (id, order, title, summary)
  - preview_prompt(story_id, ...)    — the messages a generation would send

The store is replaced via set_store() for tests, or opened on DATA_DIR when
run as __main__.

Usage:
    uv run python -m storyforge.mcp_server
"""

from mcp.server.fastmcp import FastMCP

from storyforge.lorebook import match_lorebook_entries
from storyforge.models import ParserConfig
from storyforge.prompts import PromptParser
from storyforge.storage import JsonStoryStore

mcp = FastMCP("storyforge-prompts")

_store: JsonStoryStore | None = None


def set_store(store: JsonStoryStore) -> None:
    """Replace the active store (used in tests)."""
    global _store
    _store = store


def get_store() -> JsonStoryStore:
    assert _store is not None, "Call set_store() before using the MCP tools"
    return _store


@mcp.tool()
async def list_chapters(story_id: str) -> list[dict]:
    """List the chapters of a story in reading order."""
    chapters = await get_store().get_chapters_by_story(story_id)
    return [
        {"id": c.id, "order": c.order, "title": c.title, "summary": c.summary}
        for c in chapters
    ]


@mcp.tool()
async def preview_prompt(
    story_id: str,
    prompt_id: str,
    chapter_id: str | None = None,
    scenebeat: str | None = None,
) -> dict:
    """Render a prompt for a story without generating anything.

    Lorebook entries mentioned in the scene beat are matched automatically.
    Returns {"messages": [...]} or {"error": "..."}.
    """
    store = get_store()
    matched = None
    if scenebeat:
        matched = match_lorebook_entries(store.get_lorebook(story_id), [scenebeat])
    config = ParserConfig(
        prompt_id=prompt_id,
        story_id=story_id,
        chapter_id=chapter_id,
        scenebeat=scenebeat,
        matched_entries=matched,
    )
    parsed = await PromptParser(store).parse_prompt(config)
    if parsed.error is not None:
        return {"error": parsed.error}
    return {"messages": [m.model_dump() for m in parsed.messages or []]}


if __name__ == "__main__":
    import os
    from pathlib import Path

    set_store(JsonStoryStore(Path(os.getenv("DATA_DIR", "data"))))
    mcp.run()
