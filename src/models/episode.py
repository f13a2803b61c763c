"""Models for manga episodes: seeds, planner outlines, pages and characters."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

PAGES_PER_EPISODE = 10


class PageStatus(str, Enum):
    """Lifecycle status of a single page."""

    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


# in_progress -> queued only happens when retry recovers a stuck page
ALLOWED_TRANSITIONS: dict[PageStatus, set[PageStatus]] = {
    PageStatus.QUEUED: {PageStatus.IN_PROGRESS},
    PageStatus.IN_PROGRESS: {PageStatus.DONE, PageStatus.FAILED, PageStatus.QUEUED},
    PageStatus.DONE: {PageStatus.QUEUED, PageStatus.IN_PROGRESS},
    PageStatus.FAILED: {PageStatus.QUEUED, PageStatus.IN_PROGRESS},
}


class DialogueType(str, Enum):
    """Kind of text attached to a panel."""

    DIALOGUE = "dialogue"
    THOUGHT = "thought"
    NARRATION = "narration"
    SOUND_EFFECT = "sound_effect"


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class CastMember:
    """A cast entry from the user's seed (also used for new outline characters)."""

    name: str
    traits: Optional[str] = None
    silhouette: Optional[str] = None
    outfit: Optional[str] = None
    notable_prop: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary, omitting unset optional fields."""
        data = {"name": self.name}
        for key in ("traits", "silhouette", "outfit", "notable_prop"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CastMember":
        return cls(
            name=str(data.get("name", "")).strip(),
            traits=data.get("traits"),
            silhouette=data.get("silhouette"),
            outfit=data.get("outfit"),
            notable_prop=data.get("notable_prop"),
        )


@dataclass(frozen=True)
class EpisodeSeed:
    """User input describing the episode to plan. Immutable once submitted."""

    title: str
    genre_tags: tuple[str, ...]
    tone: str
    setting: str
    cast: tuple[CastMember, ...]
    visual_vibe: Optional[str] = None
    description: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for storage and API responses."""
        data = {
            "title": self.title,
            "genre_tags": list(self.genre_tags),
            "tone": self.tone,
            "setting": self.setting,
            "cast": [c.to_dict() for c in self.cast],
        }
        if self.visual_vibe is not None:
            data["visual_vibe"] = self.visual_vibe
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "EpisodeSeed":
        """Build a seed from a raw mapping.

        Genre tags are de-duplicated preserving first occurrence. No validation
        of required fields happens here; see ``validate_seed_payload``.
        """
        tags: list[str] = []
        for tag in data.get("genre_tags") or []:
            tag = str(tag).strip()
            if tag and tag not in tags:
                tags.append(tag)
        return cls(
            title=str(data.get("title", "")).strip(),
            genre_tags=tuple(tags),
            tone=str(data.get("tone", "")).strip(),
            setting=str(data.get("setting", "")).strip(),
            cast=tuple(CastMember.from_dict(c) for c in data.get("cast") or []),
            visual_vibe=data.get("visual_vibe"),
            description=data.get("description"),
        )


@dataclass
class PanelDialogue:
    """A line of text for one panel. ``character`` is None for unattributed text."""

    panel_number: int
    text: str
    type: DialogueType = DialogueType.DIALOGUE
    character: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "panel_number": self.panel_number,
            "character": self.character,
            "text": self.text,
            "type": self.type.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PanelDialogue":
        raw_type = data.get("type") or DialogueType.DIALOGUE.value
        try:
            dialogue_type = DialogueType(raw_type)
        except ValueError:
            dialogue_type = DialogueType.DIALOGUE
        return cls(
            panel_number=int(data.get("panel_number", 0)),
            text=str(data.get("text") or ""),
            type=dialogue_type,
            character=data.get("character") or None,
        )


@dataclass
class LayoutHints:
    """Panel count (3-6) and free-text layout notes for a page."""

    panels: int = 4
    notes: str = ""

    def to_dict(self) -> dict:
        return {"panels": self.panels, "notes": self.notes}

    @classmethod
    def from_dict(cls, data: dict | None) -> "LayoutHints":
        data = data or {}
        try:
            panels = int(data.get("panels", 4))
        except (TypeError, ValueError):
            panels = 4
        return cls(panels=min(6, max(3, panels)), notes=str(data.get("notes") or ""))


@dataclass
class OutlinePage:
    """One page of the planner outline."""

    page_number: int
    beat: str
    setting: str
    key_actions: list[str] = field(default_factory=list)
    layout_hints: LayoutHints = field(default_factory=LayoutHints)
    visual_style: Optional[str] = None
    introduce_new_character: bool = False
    new_characters: list[CastMember] = field(default_factory=list)
    dialogues: list[PanelDialogue] = field(default_factory=list)
    prompt: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for storage and API responses."""
        return {
            "page_number": self.page_number,
            "beat": self.beat,
            "setting": self.setting,
            "key_actions": list(self.key_actions),
            "layout_hints": self.layout_hints.to_dict(),
            "visual_style": self.visual_style,
            "introduce_new_character": self.introduce_new_character,
            "new_characters": [c.to_dict() for c in self.new_characters],
            "dialogues": [d.to_dict() for d in self.dialogues],
            "prompt": self.prompt,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "OutlinePage":
        return cls(
            page_number=int(data.get("page_number", 0)),
            beat=str(data.get("beat") or ""),
            setting=str(data.get("setting") or ""),
            key_actions=[str(a) for a in data.get("key_actions") or []],
            layout_hints=LayoutHints.from_dict(data.get("layout_hints")),
            visual_style=data.get("visual_style") or None,
            introduce_new_character=bool(data.get("introduce_new_character", False)),
            new_characters=[
                CastMember.from_dict(c) for c in data.get("new_characters") or []
                if isinstance(c, dict) and c.get("name")
            ],
            dialogues=[
                PanelDialogue.from_dict(d) for d in data.get("dialogues") or []
                if isinstance(d, dict)
            ],
            prompt=data.get("prompt") or None,
        )


@dataclass
class PlannerCharacter:
    """Character bible entry with a stable asset filename."""

    name: str
    description: str
    asset_filename: str

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "asset_filename": self.asset_filename,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PlannerCharacter":
        return cls(
            name=str(data.get("name", "")).strip(),
            description=str(data.get("description") or ""),
            asset_filename=str(data.get("asset_filename") or ""),
        )


@dataclass
class PlannerOutline:
    """Planner output: exactly ten pages plus an optional character bible."""

    pages: list[OutlinePage]
    characters: list[PlannerCharacter] = field(default_factory=list)

    def page(self, page_number: int) -> Optional[OutlinePage]:
        """Look up an outline page by page number (not list position)."""
        for entry in self.pages:
            if entry.page_number == page_number:
                return entry
        return None

    @property
    def visual_style(self) -> Optional[str]:
        """The episode-wide style. Only page 1 is authoritative."""
        first = self.page(1)
        return first.visual_style if first else None

    def to_dict(self) -> dict:
        return {
            "pages": [p.to_dict() for p in self.pages],
            "characters": [c.to_dict() for c in self.characters],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PlannerOutline":
        return cls(
            pages=[OutlinePage.from_dict(p) for p in data.get("pages") or []],
            characters=[
                PlannerCharacter.from_dict(c) for c in data.get("characters") or []
                if isinstance(c, dict) and c.get("name")
            ],
        )


@dataclass
class Character:
    """A character in an episode's roster."""

    id: str
    episode_id: str
    name: str
    asset_filename: str
    description: Optional[str] = None
    image_url: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "episode_id": self.episode_id,
            "name": self.name,
            "description": self.description,
            "asset_filename": self.asset_filename,
            "image_url": self.image_url,
        }


@dataclass
class Page:
    """One rendered page of an episode."""

    id: str
    episode_id: str
    page_number: int
    status: PageStatus = PageStatus.QUEUED
    image_url: Optional[str] = None
    seed: Optional[int] = None
    version: int = 0
    error: Optional[str] = None
    overlays: Any = None

    def transition_to(self, status: PageStatus) -> None:
        """Move to ``status``, rejecting transitions outside the page lifecycle.

        Raises:
            ValueError: If the transition is not allowed
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise ValueError(
                f"Page {self.page_number}: invalid transition "
                f"{self.status.value} -> {status.value}"
            )
        self.status = status

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "episode_id": self.episode_id,
            "page_number": self.page_number,
            "status": self.status.value,
            "image_url": self.image_url,
            "seed": self.seed,
            "version": self.version,
            "error": self.error,
            "overlays": self.overlays,
        }


@dataclass
class Episode:
    """Aggregate root: seed, outline, ten pages and the character roster."""

    id: str
    seed: EpisodeSeed
    outline: Optional[PlannerOutline]
    pages: list[Page] = field(default_factory=list)
    characters: list[Character] = field(default_factory=list)
    renderer_model: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)

    def page(self, page_number: int) -> Optional[Page]:
        for page in self.pages:
            if page.page_number == page_number:
                return page
        return None

    @property
    def visual_style(self) -> Optional[str]:
        return self.outline.visual_style if self.outline else None

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "seed": self.seed.to_dict(),
            "outline": self.outline.to_dict() if self.outline else None,
            "pages": [p.to_dict() for p in sorted(self.pages, key=lambda p: p.page_number)],
            "characters": [c.to_dict() for c in self.characters],
            "renderer_model": self.renderer_model,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
