"""Prompt Parser — Handlebars rendering of prompt templates.

A Prompt is a list of role-tagged Handlebars message templates. Rendering
turns a PromptContext into template variables, renders every message,
splices prior chat messages in after the leading system messages and drops
messages that render blank (e.g. a message wrapped in {{#if scenebeat}}).

Template variables:
  story_id, chapters, chapter, chapter_summaries, previous_chapter_summaries,
  previous_words, scenebeat, pov {character, type}, pov_character, pov_type,
  pov_description, matched_entries, lorebook, additional
Keys of additional_context are also available at the top level unless they
would shadow one of the names above.

The preview and the generation paths both go through parse_prompt(), so
they always see the same messages.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import pybars

from storyforge.context import ContextBuilder
from storyforge.lorebook import format_lorebook
from storyforge.models import Chapter, ParsedPrompt, ParserConfig, Prompt, PromptContext, PromptMessage
from storyforge.storage import StoryStore

logger = logging.getLogger(__name__)

_compiler = pybars.Compiler()
_cache: dict[str, Callable] = {}


class PromptError(Exception):
    """Raised when a Handlebars template fails to compile or render."""


# ── Custom Handlebars helpers ────────────────────────────


def _helper_take(this, options, items, count):
    """{{#take array N}}...{{/take}} — iterate over the first N items."""
    result = []
    for item in list(items or [])[:int(count)]:
        result.extend(options["fn"](item))
    return result


def _helper_last(this, options, items, count):
    """{{#last array N}}...{{/last}} — iterate over the last N items."""
    result = []
    if int(count) <= 0:
        return result
    for item in list(items or [])[-int(count):]:
        result.extend(options["fn"](item))
    return result


_HELPERS: dict[str, Callable] = {
    "take": _helper_take,
    "last": _helper_last,
}


def render_template(template_str: str, variables: dict[str, Any]) -> str:
    """Compile and render a Handlebars template with the given variables.

    Templates are cached by source string to avoid recompilation.
    """
    try:
        compiled = _cache.get(template_str)
        if compiled is None:
            compiled = _compiler.compile(template_str)
            _cache[template_str] = compiled
        return str(compiled(variables, helpers=_HELPERS))
    except Exception as e:
        raise PromptError(f"Template error: {e}") from e


# ── Template variables ───────────────────────────────────


def _chapter_vars(chapter: Chapter) -> dict[str, Any]:
    return {
        "id": chapter.id,
        "title": chapter.title,
        "order": chapter.order,
        "summary": chapter.summary,
        "content": chapter.content,
        "outline": chapter.outline,
        "notes": chapter.notes,
        "pov_character": chapter.pov_character or "",
        "pov_type": chapter.pov_type or "",
    }


def _summaries(chapters: list[Chapter]) -> str:
    return "\n".join(
        f"Chapter {c.order}: {c.summary}" for c in chapters if c.summary.strip()
    )


def _pov_description(pov_type: str, pov_character: str | None) -> str:
    if pov_type == "First Person" and pov_character:
        return f"Write in first person, as {pov_character}."
    if pov_type == "Third Person Limited" and pov_character:
        return f"Write in third person limited, following {pov_character}."
    return f"Write in {pov_type.lower()}."


def template_variables(context: PromptContext) -> dict[str, Any]:
    """Flatten a PromptContext into the dict handed to Handlebars."""
    current = context.current_chapter
    if current is not None:
        previous = [c for c in context.chapters if c.order < current.order]
    else:
        previous = list(context.chapters)
    entries = context.matched_entries or []

    variables: dict[str, Any] = {
        "story_id": context.story_id,
        "chapters": [_chapter_vars(c) for c in context.chapters],
        "chapter": _chapter_vars(current) if current else None,
        "chapter_summaries": _summaries(context.chapters),
        "previous_chapter_summaries": _summaries(previous),
        "previous_words": context.previous_words or "",
        "scenebeat": context.scenebeat or "",
        "pov": {"character": context.pov_character or "", "type": context.pov_type},
        "pov_character": context.pov_character or "",
        "pov_type": context.pov_type,
        "pov_description": _pov_description(context.pov_type, context.pov_character),
        "matched_entries": [e.model_dump() for e in entries],
        "lorebook": format_lorebook(entries),
        "additional": dict(context.additional_context),
    }
    for key, value in context.additional_context.items():
        variables.setdefault(key, value)
    return variables


# ── Rendering ────────────────────────────────────────────


def render_messages(prompt: Prompt, context: PromptContext) -> list[PromptMessage]:
    """Render a prompt's message templates against a context.

    Pure: the same prompt and context always give the same messages.
    Raises PromptError when a template cannot be compiled or rendered.
    """
    variables = template_variables(context)
    rendered: list[PromptMessage] = []
    for template in prompt.messages:
        content = render_template(template.content, variables).strip()
        if content:
            rendered.append(PromptMessage(role=template.role, content=content))

    history = context.chat_history or []
    if history:
        split = 0
        while split < len(rendered) and rendered[split].role == "system":
            split += 1
        rendered[split:split] = list(history)
    return rendered


class PromptParser:
    """Resolves a ParserConfig into messages. Holds no per-call state."""

    def __init__(self, store: StoryStore, builder: ContextBuilder | None = None) -> None:
        self._store = store
        self._builder = builder or ContextBuilder(store)

    async def parse_prompt(self, config: ParserConfig) -> ParsedPrompt:
        """Render the configured prompt.

        Template problems come back as ParsedPrompt(error=...); store faults
        (DataUnavailableError) are raised.
        """
        context = await self._builder.build_context(config)
        prompt = await self._store.get_prompt(config.prompt_id)
        if prompt is None:
            return ParsedPrompt(error=f"Prompt not found: {config.prompt_id}")
        try:
            messages = render_messages(prompt, context)
        except PromptError as e:
            logger.warning("prompt render failed prompt_id=%s error=%s", prompt.id, e)
            return ParsedPrompt(error=str(e))
        if not messages:
            return ParsedPrompt(error=f"Prompt {prompt.id!r} rendered no messages")
        return ParsedPrompt(messages=messages)
