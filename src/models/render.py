"""Request/result models for page and character rendering."""

from dataclasses import dataclass, field
from typing import Optional

from models.episode import Character, OutlinePage


@dataclass
class PageRenderRequest:
    """Everything the renderer needs to draw one page."""

    page_number: int
    outline: OutlinePage
    episode_title: str
    visual_style: str
    seed: Optional[int] = None
    character_assets: list[Character] = field(default_factory=list)
    style_ref_urls: list[str] = field(default_factory=list)
    base_image_url: Optional[str] = None  # prior page image when editing
    edit_prompt: Optional[str] = None

    @property
    def is_edit(self) -> bool:
        return bool(self.base_image_url or self.edit_prompt)


@dataclass
class CharacterRenderRequest:
    """Request for a character reference image."""

    episode_title: str
    name: str
    description: str
    asset_filename: str
    visual_style: str


@dataclass
class PageRenderResult:
    image_url: str
    seed: int


@dataclass
class CharacterRenderResult:
    image_url: str
