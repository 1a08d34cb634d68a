"""Pydantic request bodies for API endpoints."""

from pydantic import BaseModel

from storyforge.models import GenerationParams, ParserConfig


class GenerateBody(BaseModel):
    config: ParserConfig
    params: GenerationParams


class MatchLorebookBody(BaseModel):
    texts: list[str]


class UpdateKeyBody(BaseModel):
    provider: str
    key: str
