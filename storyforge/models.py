"""Core domain models.

Every pipeline stage and store function operates on these types.
Pydantic is used for validation and serialisation at every data boundary.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant"]

ProviderName = Literal["openai", "openrouter", "local", "gemini"]

PovType = Literal["First Person", "Third Person Limited", "Third Person Omniscient"]

DEFAULT_POV_TYPE: PovType = "Third Person Omniscient"

PromptType = Literal[
    "scene_beat",
    "gen_summary",
    "selection_specific",
    "continue_writing",
    "brainstorm",
    "other",
]

LorebookCategory = Literal[
    "character",
    "location",
    "item",
    "event",
    "note",
    "synopsis",
    "starting scenario",
    "timeline",
]


# ---------------------------------------------------------------------------
# Story data (read from the store)
# ---------------------------------------------------------------------------

class Story(BaseModel):
    id: str
    title: str
    author: str = ""
    language: str = "English"
    synopsis: str = ""


class Chapter(BaseModel):
    """A chapter of a story. Content is stored as plain text."""

    id: str
    story_id: str
    title: str
    order: int
    summary: str = ""
    content: str = ""
    outline: str = ""
    pov_character: str | None = None
    pov_type: PovType | None = None
    notes: str = ""


class LorebookEntry(BaseModel):
    id: str
    name: str
    description: str = ""
    category: LorebookCategory = "note"
    tags: list[str] = Field(default_factory=list)
    level: Literal["global", "series", "story"] = "story"
    scope_id: str | None = None
    importance: Literal["major", "minor", "background"] | None = None
    is_disabled: bool = False


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

class PromptMessage(BaseModel):
    """One role-tagged message of the conversation sent to a provider."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str


class Prompt(BaseModel):
    """A named prompt template. Message contents are Handlebars sources."""

    id: str
    name: str
    prompt_type: PromptType = "other"
    messages: list[PromptMessage]
    temperature: float = Field(default=1.0, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, gt=0)


class ParserConfig(BaseModel):
    """Caller intent: what a prompt should be built from.

    Frozen; one config describes exactly one render.
    """

    model_config = ConfigDict(frozen=True)

    prompt_id: str
    story_id: str
    chapter_id: str | None = None
    pov_character: str | None = None
    pov_type: PovType | None = None
    scenebeat: str | None = None
    previous_words: str | None = None
    additional_context: dict[str, Any] | None = None
    matched_entries: list[LorebookEntry] | None = None
    chat_history: list[PromptMessage] | None = None


class PromptContext(BaseModel):
    """ParserConfig plus everything resolved from the store."""

    prompt_id: str
    story_id: str
    chapter_id: str | None = None
    scenebeat: str | None = None
    previous_words: str | None = None
    chat_history: list[PromptMessage] | None = None
    matched_entries: list[LorebookEntry] | None = None
    chapters: list[Chapter]
    current_chapter: Chapter | None = None
    pov_character: str | None = None
    pov_type: PovType
    additional_context: dict[str, Any] = Field(default_factory=dict)


class ParsedPrompt(BaseModel):
    """Either the rendered messages or a configuration error, never both."""

    messages: list[PromptMessage] | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------

class GenerationParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    provider: ProviderName
    model: str
    temperature: float = Field(default=1.0, ge=0.0, le=2.0)
    max_tokens: int = Field(default=2048, gt=0)


class StreamingState(BaseModel):
    """Snapshot of one generation session. Replaced on every change."""

    model_config = ConfigDict(frozen=True)

    is_streaming: bool = False
    streamed_text: str = ""
    is_complete: bool = False


class AIModel(BaseModel):
    id: str
    name: str
    provider: ProviderName
    context_length: int = 4096
    enabled: bool = True


class AISettings(BaseModel):
    """Provider keys, endpoints and default models."""

    openai_key: str = ""
    openrouter_key: str = ""
    gemini_key: str = ""
    local_api_url: str = ""
    default_local_model: str | None = None
    default_openai_model: str | None = None
    default_openrouter_model: str | None = None
    default_gemini_model: str | None = None
    available_models: list[AIModel] = Field(default_factory=list)
    last_models_fetch: datetime | None = None
