"""Prompt-to-stream pipeline: preview and execute share one parse step.

  1. ContextBuilder resolves the ParserConfig (chapters, POV, extra context).
  2. PromptParser renders the named prompt into messages.
     preview_prompt() stops here.
  3. generate_with_prompt() dispatches the same messages to the provider.
  4. run_generation() streams the response into a GenerationSession.
"""

from __future__ import annotations

import logging

from storyforge.llm import GenerationService, generate_with_provider
from storyforge.models import GenerationParams, ParsedPrompt, ParserConfig
from storyforge.prompts import PromptParser
from storyforge.session import GenerationSession
from storyforge.streaming import StreamResponse

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    """The prompt could not be rendered, so there is nothing to generate from."""


async def preview_prompt(parser: PromptParser, config: ParserConfig) -> ParsedPrompt:
    """Dry run: the messages a generation with this config would send."""
    return await parser.parse_prompt(config)


async def generate_with_prompt(
    parser: PromptParser,
    service: GenerationService,
    config: ParserConfig,
    params: GenerationParams,
) -> StreamResponse:
    parsed = await parser.parse_prompt(config)
    if parsed.error is not None:
        raise ConfigurationError(parsed.error)
    return await generate_with_provider(service, parsed.messages or [], params)


async def run_generation(
    parser: PromptParser,
    service: GenerationService,
    session: GenerationSession,
    config: ParserConfig,
    params: GenerationParams,
) -> str:
    """Parse, dispatch and stream into the session. Returns the generated text."""
    response = await generate_with_prompt(parser, service, config, params)
    text = await session.process_stream(response)
    logger.info("generation finished phase=%s chars=%d", session.phase.value, len(text))
    return text
