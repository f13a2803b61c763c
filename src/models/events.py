"""Lifecycle events published on an episode's event channel."""

from dataclasses import asdict, dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class PlanningStarted:
    episode_id: str
    message: Optional[str] = None
    type: str = "planning_started"


@dataclass(frozen=True)
class PlanningProgress:
    episode_id: str
    message: Optional[str] = None
    type: str = "planning_progress"


@dataclass(frozen=True)
class PlanningComplete:
    episode_id: str
    message: Optional[str] = None
    type: str = "planning_complete"


@dataclass(frozen=True)
class PageProgress:
    """Progress of one page, ``pct`` in 0-100."""

    episode_id: str
    page: int
    pct: int
    type: str = "page_progress"


@dataclass(frozen=True)
class PageDone:
    episode_id: str
    page: int
    image_url: str
    seed: int
    version: int
    type: str = "page_done"


@dataclass(frozen=True)
class PageFailed:
    """A page exhausted its attempts. ``page`` is 0 when a whole generation run failed."""

    episode_id: str
    page: int
    error: str
    type: str = "page_failed"


EpisodeEvent = Union[
    PlanningStarted,
    PlanningProgress,
    PlanningComplete,
    PageProgress,
    PageDone,
    PageFailed,
]


def event_to_dict(event: EpisodeEvent) -> dict:
    """Serialize an event to the JSON shape sent to stream clients."""
    return asdict(event)
