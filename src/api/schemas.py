"""Pydantic request/response models for the Mangaloom API."""

from typing import Any, Optional

from pydantic import BaseModel, Field

# =============================================================================
# Response Models
# =============================================================================


class RootResponse(BaseModel):
    """Root endpoint response."""

    message: str
    version: str

    model_config = {"json_schema_extra": {"examples": [{"message": "Mangaloom API", "version": "1.0.0"}]}}


class HealthResponse(BaseModel):
    """Health check response."""

    status: str

    model_config = {"json_schema_extra": {"examples": [{"status": "healthy"}]}}


class PlanResponse(BaseModel):
    """Result of planning an episode."""

    episode_id: str
    outline: dict


class GenerationStartedResponse(BaseModel):
    """Page generation was scheduled. Outcome arrives on the event stream."""

    started: bool = True


class StyleRefsResponse(BaseModel):
    refs: list[str]


class StyleRefUploadResponse(BaseModel):
    url: str


class OverlaysResponse(BaseModel):
    page_id: str
    overlays: Any = None


class ReadPageResponse(BaseModel):
    """Narration audio for a page."""

    audio_url: str
    dialogues: list[dict]


# =============================================================================
# Request Models
# =============================================================================


class CastMemberRequest(BaseModel):
    """One cast member of the seed."""

    name: Optional[str] = None
    traits: Optional[str] = None
    silhouette: Optional[str] = None
    outfit: Optional[str] = None
    notable_prop: Optional[str] = None


class EpisodeSeedRequest(BaseModel):
    """Seed for a new episode.

    Fields are optional at the schema level so missing ones are reported as a
    400 with the list of missing fields instead of a generic 422.
    """

    title: Optional[str] = None
    genre_tags: Optional[list[str]] = None
    tone: Optional[str] = None
    setting: Optional[str] = None
    cast: Optional[list[CastMemberRequest]] = None
    visual_vibe: Optional[str] = None
    description: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "title": "Night Shift",
                    "genre_tags": ["action", "mystery"],
                    "tone": "tense",
                    "setting": "neon-lit Osaka rooftops",
                    "cast": [{"name": "Aoi", "traits": "stubborn courier"}, {"name": "Kenji"}],
                }
            ]
        }
    }


class OverlaysRequest(BaseModel):
    """Opaque overlay payload, stored unchanged."""

    overlays: Any = None


class RegenerateRequest(BaseModel):
    """Edit instruction for an existing page image."""

    prompt: str = Field(..., min_length=1)
    style_ref_urls: list[str] = Field(default_factory=list)


class ReadPageRequest(BaseModel):
    voice_id: Optional[str] = None
