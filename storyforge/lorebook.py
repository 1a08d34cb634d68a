"""Lorebook keyword matching and formatting.

Matching is done by callers (API routes, MCP tools) before a prompt is
parsed; the resulting entries travel through ParserConfig.matched_entries.
"""

from storyforge.models import LorebookEntry

_CATEGORY_TITLES = {
    "character": "Characters",
    "location": "Locations",
    "item": "Items",
    "event": "Events",
    "note": "Notes",
    "synopsis": "Synopsis",
    "starting scenario": "Starting Scenario",
    "timeline": "Timeline",
}


def match_lorebook_entries(
    entries: list[LorebookEntry], texts: list[str]
) -> list[LorebookEntry]:
    """Return enabled entries whose name or any tag occurs in one of the texts.

    Case-insensitive substring match; each entry appears at most once, in
    lorebook order.
    """
    haystack = [t.lower() for t in texts if t]
    matched: list[LorebookEntry] = []
    for entry in entries:
        if entry.is_disabled:
            continue
        keywords = [entry.name, *entry.tags]
        if any(kw and kw.lower() in text for kw in keywords for text in haystack):
            matched.append(entry)
    return matched


def format_lorebook(entries: list[LorebookEntry]) -> str:
    """Render entries as text grouped by category, categories in fixed order."""
    sections: list[str] = []
    for category, title in _CATEGORY_TITLES.items():
        group = [e for e in entries if e.category == category]
        if not group:
            continue
        lines = [f"{title}:"]
        for entry in group:
            if entry.description:
                lines.append(f"- {entry.name}: {entry.description}")
            else:
                lines.append(f"- {entry.name}")
        sections.append("\n".join(lines))
    return "\n\n".join(sections)
