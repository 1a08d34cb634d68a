import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI

from storyforge.llm import GenerationService
from storyforge.prompts import PromptParser
from storyforge.routes import router
from storyforge.storage import JsonStoryStore

load_dotenv(Path(__file__).parent.parent / ".env")

DEFAULT_DATA_DIR = Path(__file__).parent.parent / "data"

logger = logging.getLogger(__name__)


def create_app(data_dir: Path | None = None, presets_dir: Path | None = None) -> FastAPI:
    resolved = data_dir or Path(os.getenv("DATA_DIR", str(DEFAULT_DATA_DIR)))
    store = JsonStoryStore(resolved, presets_dir=presets_dir)

    app = FastAPI(title="Storyforge")
    app.state.store = store
    app.state.parser = PromptParser(store)
    app.state.service = GenerationService.from_settings(store.get_settings(), store)
    app.include_router(router, prefix="/api")
    logger.info("app ready data_dir=%s", resolved)
    return app


# Default app instance for uvicorn (uses DATA_DIR env var or default)
app = create_app()
