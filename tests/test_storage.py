import json

import pytest

from storyforge.models import Chapter, LorebookEntry, Prompt, PromptMessage, Story
from storyforge.storage import DataUnavailableError


# ── Stories ──────────────────────────────────────────────────


def test_create_and_get_story(store):
    store.create_story(Story(id="s1", title="First"))
    assert store.get_story("s1").title == "First"
    assert [s.id for s in store.list_stories()] == ["s1"]


def test_get_missing_story(store):
    assert store.get_story("nope") is None


def test_corrupt_story_file(store, data_dir):
    (data_dir / "stories" / "bad.json").write_text("{not json")
    with pytest.raises(DataUnavailableError):
        store.get_story("bad")


def test_list_stories_skips_corrupt_file(store, data_dir):
    store.create_story(Story(id="s1", title="S"))
    (data_dir / "stories" / "bad.json").write_text(json.dumps({"id": "bad"}))
    assert [s.id for s in store.list_stories()] == ["s1"]


# ── Chapters ─────────────────────────────────────────────────


async def test_chapters_sorted_by_order(store):
    store.create_story(Story(id="s1", title="S"))
    store.save_chapter(Chapter(id="c2", story_id="s1", title="Two", order=2))
    store.save_chapter(Chapter(id="c1", story_id="s1", title="One", order=1))
    chapters = await store.get_chapters_by_story("s1")
    assert [c.id for c in chapters] == ["c1", "c2"]


async def test_save_chapter_upserts(store):
    store.create_story(Story(id="s1", title="S"))
    store.save_chapter(Chapter(id="c1", story_id="s1", title="Old", order=1))
    store.save_chapter(Chapter(id="c1", story_id="s1", title="New", order=1))
    chapters = await store.get_chapters_by_story("s1")
    assert [c.title for c in chapters] == ["New"]


def test_save_chapter_requires_story(store):
    with pytest.raises(DataUnavailableError):
        store.save_chapter(Chapter(id="c1", story_id="ghost", title="x", order=1))


async def test_story_without_chapters(store):
    store.create_story(Story(id="s1", title="S"))
    assert await store.get_chapters_by_story("s1") == []


async def test_chapters_of_missing_story_is_fault(store):
    with pytest.raises(DataUnavailableError):
        await store.get_chapters_by_story("ghost")


async def test_corrupt_chapters_file_is_fault(store, data_dir):
    store.create_story(Story(id="s1", title="S"))
    (data_dir / "stories" / "s1" / "chapters.json").write_text(
        json.dumps([{"id": "c1"}])
    )
    with pytest.raises(DataUnavailableError):
        await store.get_chapters_by_story("s1")


async def test_get_chapter_by_id(demo_store):
    chapter = await demo_store.get_chapter_by_id("demo-ch-2")
    assert chapter.title == "Tiergarten at Dawn"
    assert await demo_store.get_chapter_by_id("missing") is None


async def test_chapter_lookup_ignores_unrelated_corrupt_story(demo_store, data_dir):
    demo_store.create_story(Story(id="0-broken", title="Broken"))
    (data_dir / "stories" / "0-broken" / "chapters.json").write_text("[{oops")
    chapter = await demo_store.get_chapter_by_id("demo-ch-2")
    assert chapter.title == "Tiergarten at Dawn"


# ── Lorebook ─────────────────────────────────────────────────


def test_lorebook_upsert(store):
    store.create_story(Story(id="s1", title="S"))
    store.save_lorebook_entries("s1", [LorebookEntry(id="e1", name="Lena")])
    store.save_lorebook_entries("s1", [
        LorebookEntry(id="e1", name="Lena Vogt"),
        LorebookEntry(id="e2", name="Konrad"),
    ])
    assert [e.name for e in store.get_lorebook("s1")] == ["Lena Vogt", "Konrad"]


def test_empty_lorebook(store):
    assert store.get_lorebook("s1") == []


def test_corrupt_lorebook_is_fault(store, data_dir):
    store.create_story(Story(id="s1", title="S"))
    (data_dir / "stories" / "s1" / "lorebook.json").write_text(json.dumps([{"id": "e1"}]))
    with pytest.raises(DataUnavailableError):
        store.get_lorebook("s1")


# ── Prompts ──────────────────────────────────────────────────


async def test_preset_prompt_available(store):
    prompt = await store.get_prompt("scene-beat")
    assert prompt is not None
    assert prompt.prompt_type == "scene_beat"


async def test_missing_prompt(store):
    assert await store.get_prompt("nope") is None


async def test_user_prompt_overrides_preset(store):
    store.save_prompt(Prompt(
        id="scene-beat",
        name="Mine",
        messages=[PromptMessage(role="user", content="{{scenebeat}}")],
    ))
    prompt = await store.get_prompt("scene-beat")
    assert prompt.name == "Mine"
    names = {p.id: p.name for p in store.list_prompts()}
    assert names["scene-beat"] == "Mine"
    assert "brainstorm" in names


async def test_corrupt_prompt_is_fault(store, data_dir):
    (data_dir / "prompts" / "bad.json").write_text(json.dumps({"id": "bad"}))
    with pytest.raises(DataUnavailableError):
        await store.get_prompt("bad")


# ── Settings ─────────────────────────────────────────────────


def test_settings_defaults(store):
    settings = store.get_settings()
    assert settings.openai_key == ""
    assert settings.local_api_url == "http://localhost:1234/v1"


def test_update_settings_persists(store, data_dir):
    store.update_settings({"openai_key": "sk-test"})
    assert store.get_settings().openai_key == "sk-test"
    stored = json.loads((data_dir / "config.json").read_text())
    assert stored["openai_key"] == "sk-test"
