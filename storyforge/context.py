"""Context Builder — resolves a ParserConfig into a PromptContext.

Reads chapters from the store and merges point-of-view data:

    pov_type      config value > current chapter's value > "Third Person Omniscient"
    pov_character config value > current chapter's value > None

Matched lorebook entries are passed through untouched; matching happens
upstream (see storyforge.lorebook).
"""

from __future__ import annotations

import asyncio
import logging

from storyforge.models import DEFAULT_POV_TYPE, Chapter, ParserConfig, PromptContext
from storyforge.storage import StoryStore

logger = logging.getLogger(__name__)


async def _no_chapter() -> Chapter | None:
    return None


class ContextBuilder:
    def __init__(self, store: StoryStore) -> None:
        self._store = store

    async def build_context(self, config: ParserConfig) -> PromptContext:
        """Fetch chapters (and the current chapter, if any) concurrently.

        Store faults propagate as DataUnavailableError. A chapter id the store
        does not know yields current_chapter=None.
        """
        chapters, current_chapter = await asyncio.gather(
            self._store.get_chapters_by_story(config.story_id),
            self._store.get_chapter_by_id(config.chapter_id)
            if config.chapter_id
            else _no_chapter(),
        )
        if config.chapter_id and current_chapter is None:
            logger.warning("chapter not found chapter_id=%s story_id=%s",
                           config.chapter_id, config.story_id)

        pov_character = config.pov_character or (
            current_chapter.pov_character if current_chapter else None
        )
        pov_type = (
            config.pov_type
            or (current_chapter.pov_type if current_chapter else None)
            or DEFAULT_POV_TYPE
        )

        return PromptContext(
            prompt_id=config.prompt_id,
            story_id=config.story_id,
            chapter_id=config.chapter_id,
            scenebeat=config.scenebeat,
            previous_words=config.previous_words,
            chat_history=config.chat_history,
            matched_entries=config.matched_entries,
            chapters=chapters,
            current_chapter=current_chapter,
            pov_character=pov_character,
            pov_type=pov_type,
            additional_context=dict(config.additional_context or {}),
        )
