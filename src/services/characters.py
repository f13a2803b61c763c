"""Character roster derivation and asset filename helpers."""

import logging

from models.episode import EpisodeSeed, PlannerCharacter, PlannerOutline

logger = logging.getLogger(__name__)

DEFAULT_CAST_DESCRIPTION = "main cast member"
DEFAULT_NEW_CHARACTER_DESCRIPTION = "new character"


def sanitize_asset_filename(name: str) -> str:
    """Turn a character name (or filename) into a stable ``.png`` asset filename.

    Lowercases, collapses every run of non-alphanumeric characters to one
    underscore, trims underscores, and appends exactly one ``.png``.

    Example:
        >>> sanitize_asset_filename("Mysterious Rival")
        'mysterious_rival.png'
        >>> sanitize_asset_filename("Aoi.PNG")
        'aoi.png'
    """
    stem = name.strip()
    if stem.lower().endswith(".png"):
        stem = stem[:-4]

    out: list[str] = []
    pending_underscore = False
    for ch in stem.lower():
        if ch.isascii() and ch.isalnum():
            if pending_underscore and out:
                out.append("_")
            pending_underscore = False
            out.append(ch)
        else:
            pending_underscore = True

    return ("".join(out) or "character") + ".png"


def extract_asset_tags(prompt: str | None) -> list[str]:
    """Scan a free-text prompt for ``<asset_filename>`` tags.

    A tag is whatever sits between a ``<`` and the next ``>``. A ``<`` with no
    closing ``>`` is ignored, as are empty tags. Order of first appearance is
    preserved and duplicates are dropped.
    """
    if not prompt:
        return []

    tags: list[str] = []
    pos = 0
    while True:
        start = prompt.find("<", pos)
        if start == -1:
            break
        end = prompt.find(">", start + 1)
        if end == -1:
            break
        # A nested "<" restarts the tag
        nested = prompt.rfind("<", start + 1, end)
        if nested != -1:
            start = nested
        tag = prompt[start + 1:end].strip()
        if tag and tag not in tags:
            tags.append(tag)
        pos = end + 1
    return tags


def _unique_filename(filename: str, taken: set[str]) -> str:
    if filename not in taken:
        return filename
    stem = filename[:-4]
    n = 2
    while f"{stem}_{n}.png" in taken:
        n += 1
    return f"{stem}_{n}.png"


def derive_characters(seed: EpisodeSeed, outline: PlannerOutline) -> list[PlannerCharacter]:
    """Merge the planner bible, seed cast and new outline characters into one roster.

    Sources are applied in priority order (planner bible, seed cast, characters
    introduced on outline pages). Names are keyed case-insensitively and the
    first writer wins. The result keeps the order of first appearance.
    Asset filenames are sanitized and made unique within the roster.
    """
    roster: dict[str, PlannerCharacter] = {}
    taken: set[str] = set()

    def add(name: str, description: str, filename: str) -> None:
        name = name.strip()
        key = name.lower()
        if not key or key in roster:
            return
        asset_filename = _unique_filename(sanitize_asset_filename(filename), taken)
        taken.add(asset_filename)
        roster[key] = PlannerCharacter(
            name=name, description=description, asset_filename=asset_filename
        )

    for entry in outline.characters:
        add(entry.name, entry.description, entry.asset_filename or entry.name)

    for member in seed.cast:
        add(member.name, member.traits or DEFAULT_CAST_DESCRIPTION, member.name)

    for page in outline.pages:
        for member in page.new_characters:
            add(member.name, member.traits or DEFAULT_NEW_CHARACTER_DESCRIPTION, member.name)

    logger.debug(f"Derived {len(roster)} character(s) for '{seed.title}'")
    return list(roster.values())
