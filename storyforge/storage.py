"""JSON file storage — the story data store the pipeline reads from.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM; reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      config.json               ← AI settings (see storyforge.config)
      prompts/
        {prompt_id}.json        ← user prompt templates (override presets)
      stories/
        {story_id}.json         ← story metadata
        {story_id}/
          chapters.json         ← list of Chapter objects
          lorebook.json         ← list of LorebookEntry objects

    {presets}/
      prompts/
        {prompt_id}.json        ← bundled prompt templates, read-only

The pipeline only ever reads through the async methods of the StoryStore
protocol, so a different backend (an HTTP API, a database) can be dropped in.
"""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Protocol

from pydantic import ValidationError

from storyforge import config as config_mod
from storyforge.models import AISettings, Chapter, LorebookEntry, Prompt, Story

logger = logging.getLogger(__name__)

DEFAULT_PRESETS_DIR = Path(__file__).parent.parent / "presets"


class DataUnavailableError(RuntimeError):
    """Raised when the store cannot produce data the pipeline requires."""


# ---------------------------------------------------------------------------
# Protocol — what the pipeline needs from a store
# ---------------------------------------------------------------------------

class StoryStore(Protocol):
    async def get_chapters_by_story(self, story_id: str) -> list[Chapter]: ...

    async def get_chapter_by_id(self, chapter_id: str) -> Chapter | None: ...

    async def get_prompt(self, prompt_id: str) -> Prompt | None: ...


# ---------------------------------------------------------------------------
# JsonStoryStore
# ---------------------------------------------------------------------------

class JsonStoryStore:
    def __init__(self, base_path: Path, presets_dir: Path | None = None) -> None:
        self._base = base_path
        self._stories_root = base_path / "stories"
        self._prompts_root = base_path / "prompts"
        self._presets = presets_dir or DEFAULT_PRESETS_DIR
        self._stories_root.mkdir(parents=True, exist_ok=True)
        self._prompts_root.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _story_file(self, story_id: str) -> Path:
        return self._stories_root / f"{story_id}.json"

    def _story_dir(self, story_id: str) -> Path:
        return self._stories_root / story_id

    def _preset_prompts_dir(self) -> Path:
        return self._presets / "prompts"

    def _read_json(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise DataUnavailableError(f"Cannot read {path.name}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    # ------------------------------------------------------------------
    # Stories
    # ------------------------------------------------------------------

    def create_story(self, story: Story) -> Story:
        self._story_file(story.id).write_text(story.model_dump_json(indent=2))
        self._story_dir(story.id).mkdir(exist_ok=True)
        return story

    def get_story(self, story_id: str) -> Story | None:
        path = self._story_file(story_id)
        if not path.is_file():
            return None
        try:
            return Story.model_validate(self._read_json(path))
        except ValidationError as e:
            raise DataUnavailableError(f"Story {story_id!r} is corrupt") from e

    def list_stories(self) -> list[Story]:
        """Every readable story. Corrupt story files are logged and left out."""
        stories = []
        for path in sorted(self._stories_root.glob("*.json")):
            try:
                story = self.get_story(path.stem)
            except DataUnavailableError as e:
                logger.warning("skipping story file=%s: %s", path.name, e)
                continue
            if story is not None:
                stories.append(story)
        return stories

    # ------------------------------------------------------------------
    # Chapters
    # ------------------------------------------------------------------

    def save_chapter(self, chapter: Chapter) -> None:
        """Upsert a chapter by id."""
        if self.get_story(chapter.story_id) is None:
            raise DataUnavailableError(f"Story {chapter.story_id!r} not found")
        chapters = self._load_chapters(chapter.story_id)
        for i, c in enumerate(chapters):
            if c.id == chapter.id:
                chapters[i] = chapter
                break
        else:
            chapters.append(chapter)
        self._write_json(
            self._story_dir(chapter.story_id) / "chapters.json",
            [c.model_dump() for c in chapters],
        )

    def _load_chapters(self, story_id: str) -> list[Chapter]:
        path = self._story_dir(story_id) / "chapters.json"
        if not path.exists():
            return []
        try:
            chapters = [Chapter.model_validate(c) for c in self._read_json(path)]
        except ValidationError as e:
            raise DataUnavailableError(f"Chapters of {story_id!r} are corrupt") from e
        return sorted(chapters, key=lambda c: c.order)

    def _find_chapter(self, chapter_id: str) -> Chapter | None:
        for story_file in sorted(self._stories_root.glob("*.json")):
            try:
                chapters = self._load_chapters(story_file.stem)
            except DataUnavailableError as e:
                logger.warning("skipping chapters story=%s: %s", story_file.stem, e)
                continue
            for chapter in chapters:
                if chapter.id == chapter_id:
                    return chapter
        return None

    async def get_chapters_by_story(self, story_id: str) -> list[Chapter]:
        """All chapters of a story, ordered. A missing story is a fault."""
        if not self._story_file(story_id).is_file():
            raise DataUnavailableError(f"Story {story_id!r} not found")
        return await asyncio.to_thread(self._load_chapters, story_id)

    async def get_chapter_by_id(self, chapter_id: str) -> Chapter | None:
        """Chapter by id, or None when no story holds it."""
        return await asyncio.to_thread(self._find_chapter, chapter_id)

    # ------------------------------------------------------------------
    # Lorebook
    # ------------------------------------------------------------------

    def get_lorebook(self, story_id: str) -> list[LorebookEntry]:
        path = self._story_dir(story_id) / "lorebook.json"
        if not path.exists():
            return []
        try:
            return [LorebookEntry.model_validate(e) for e in self._read_json(path)]
        except ValidationError as e:
            raise DataUnavailableError(f"Lorebook of {story_id!r} is corrupt") from e

    def save_lorebook_entries(self, story_id: str, entries: list[LorebookEntry]) -> None:
        """Upsert entries by id; existing ids are overwritten."""
        existing = {e.id: e for e in self.get_lorebook(story_id)}
        for entry in entries:
            existing[entry.id] = entry
        self._story_dir(story_id).mkdir(exist_ok=True)
        self._write_json(
            self._story_dir(story_id) / "lorebook.json",
            [e.model_dump() for e in existing.values()],
        )

    # ------------------------------------------------------------------
    # Prompts (user prompts override presets)
    # ------------------------------------------------------------------

    def list_prompts(self) -> list[Prompt]:
        by_id: dict[str, Prompt] = {}
        # Presets first (lower priority)
        if self._preset_prompts_dir().is_dir():
            for path in sorted(self._preset_prompts_dir().glob("*.json")):
                by_id[path.stem] = Prompt.model_validate(self._read_json(path))
        for path in sorted(self._prompts_root.glob("*.json")):
            by_id[path.stem] = Prompt.model_validate(self._read_json(path))
        return list(by_id.values())

    def save_prompt(self, prompt: Prompt) -> None:
        (self._prompts_root / f"{prompt.id}.json").write_text(
            prompt.model_dump_json(indent=2)
        )

    def _load_prompt(self, prompt_id: str) -> Prompt | None:
        for path in (
            self._prompts_root / f"{prompt_id}.json",
            self._preset_prompts_dir() / f"{prompt_id}.json",
        ):
            if path.is_file():
                try:
                    return Prompt.model_validate(self._read_json(path))
                except ValidationError as e:
                    raise DataUnavailableError(f"Prompt {prompt_id!r} is corrupt") from e
        return None

    async def get_prompt(self, prompt_id: str) -> Prompt | None:
        return await asyncio.to_thread(self._load_prompt, prompt_id)

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def get_settings(self) -> AISettings:
        return config_mod.load_ai_settings(self._base)

    def update_settings(self, fields: dict[str, Any]) -> AISettings:
        config_mod.update_config(self._base, fields)
        logger.info("settings updated fields=%s", sorted(fields))
        return self.get_settings()
