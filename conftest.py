import shutil
from pathlib import Path

import pytest

from storyforge.demo import create_demo_data
from storyforge.storage import JsonStoryStore

TEST_DATA_DIR = Path("data-tests")
PRESETS_DIR = Path(__file__).parent / "presets"


@pytest.fixture(autouse=True)
def clean_test_data(monkeypatch):
    """Wipe data-tests/ and provider env vars before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    for name in ("OPENAI_API_KEY", "OPENROUTER_API_KEY", "GEMINI_API_KEY", "LOCAL_API_URL"):
        monkeypatch.delenv(name, raising=False)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
def data_dir() -> Path:
    return TEST_DATA_DIR


@pytest.fixture
def store() -> JsonStoryStore:
    return JsonStoryStore(TEST_DATA_DIR, presets_dir=PRESETS_DIR)


@pytest.fixture
def demo_store(store: JsonStoryStore) -> JsonStoryStore:
    """Store holding the demo story (3 chapters, 3 lorebook entries)."""
    create_demo_data(store)
    return store
