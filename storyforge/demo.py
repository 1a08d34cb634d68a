"""Create a demo story for development/testing."""

import shutil

from storyforge.models import Chapter, LorebookEntry, Story
from storyforge.storage import JsonStoryStore

DEMO_STORY_ID = "demo-story-shadows-berlin"

DEMO_CHAPTERS = [
    {
        "id": "demo-ch-1",
        "title": "The Courier",
        "summary": "Lena Vogt, a night-shift archivist, receives a sealed envelope "
        "meant for her missing brother.",
        "content": "The envelope was still warm from someone's coat pocket.",
        "pov_character": "Lena Vogt",
        "pov_type": "Third Person Limited",
    },
    {
        "id": "demo-ch-2",
        "title": "Tiergarten at Dawn",
        "summary": "Lena follows the envelope's instructions to a bench in the "
        "Tiergarten and is met by Konrad, her brother's former partner.",
        "content": "Frost clung to the benches like a warning nobody heeded.",
        "pov_character": "Lena Vogt",
        "pov_type": None,
    },
    {
        "id": "demo-ch-3",
        "title": "The Safe House",
        "summary": "",
        "content": "",
        "pov_character": None,
        "pov_type": None,
    },
]

DEMO_LOREBOOK = [
    LorebookEntry(
        id="demo-lore-lena",
        name="Lena Vogt",
        description="Archivist at the Stadtarchiv, meticulous, distrusts officials.",
        category="character",
        tags=["Lena", "archivist"],
        importance="major",
    ),
    LorebookEntry(
        id="demo-lore-konrad",
        name="Konrad Brandt",
        description="Ex-police detective, owes Lena's brother a debt.",
        category="character",
        tags=["Konrad"],
    ),
    LorebookEntry(
        id="demo-lore-tiergarten",
        name="Tiergarten",
        description="Central park; the fog there hides meetings.",
        category="location",
        tags=["park"],
    ),
]


def create_demo_data(store: JsonStoryStore) -> Story:
    """Replace the demo story (chapters and lorebook) with fresh data."""
    demo_dir = store.base_path / "stories" / DEMO_STORY_ID
    if demo_dir.exists():
        shutil.rmtree(demo_dir)

    story = store.create_story(Story(
        id=DEMO_STORY_ID,
        title="Shadows over Berlin",
        author="Demo",
        synopsis="An archivist is pulled into her missing brother's last case.",
    ))
    for order, chapter in enumerate(DEMO_CHAPTERS, start=1):
        store.save_chapter(Chapter(story_id=DEMO_STORY_ID, order=order, **chapter))
    store.save_lorebook_entries(DEMO_STORY_ID, DEMO_LOREBOOK)
    return story
