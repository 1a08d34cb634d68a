"""Generation endpoints: streamed generation, abort, model listing."""

from fastapi import APIRouter, HTTPException, Request, Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from storyforge.llm import GenerationService, LLMError, ProviderNotConfiguredError
from storyforge.pipeline import ConfigurationError, generate_with_prompt
from storyforge.storage import DataUnavailableError

from .models import GenerateBody

router = APIRouter()


@router.post("/generate")
async def generate(request: Request, body: GenerateBody):
    """Render the prompt and stream the provider's output as server-sent events.

    Returns 204 when the generation was aborted before the provider answered.
    """
    service: GenerationService = request.app.state.service
    try:
        response = await generate_with_prompt(
            request.app.state.parser, service, body.config, body.params
        )
    except DataUnavailableError as e:
        raise HTTPException(404, str(e))
    except ConfigurationError as e:
        raise HTTPException(422, str(e))
    except ProviderNotConfiguredError as e:
        raise HTTPException(400, str(e))
    except LLMError as e:
        raise HTTPException(502, str(e))

    if response.status_code == 204 or response.body is None:
        await response.aclose()
        return Response(status_code=204)
    return StreamingResponse(
        response.body,
        media_type="text/event-stream",
        background=BackgroundTask(response.aclose),
    )


@router.post("/generate/abort")
async def abort_generation(request: Request):
    """Abort the most recent generation."""
    request.app.state.service.abort_active_stream()
    return {"ok": True}


@router.get("/models")
async def list_models(request: Request, provider: str | None = None, refresh: bool = False):
    """Known models, optionally for one provider and freshly fetched."""
    service: GenerationService = request.app.state.service
    try:
        return await service.get_available_models(provider, force_refresh=refresh)
    except LLMError as e:
        raise HTTPException(400, str(e))
