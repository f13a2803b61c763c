# Data models for mangaloom
from .episode import (
    PAGES_PER_EPISODE,
    CastMember,
    Character,
    DialogueType,
    Episode,
    EpisodeSeed,
    LayoutHints,
    OutlinePage,
    Page,
    PageStatus,
    PanelDialogue,
    PlannerCharacter,
    PlannerOutline,
)
from .events import (
    EpisodeEvent,
    PageDone,
    PageFailed,
    PageProgress,
    PlanningComplete,
    PlanningProgress,
    PlanningStarted,
    event_to_dict,
)
from .render import (
    CharacterRenderRequest,
    CharacterRenderResult,
    PageRenderRequest,
    PageRenderResult,
)

__all__ = [
    # Episodes
    "PAGES_PER_EPISODE",
    "CastMember",
    "Character",
    "DialogueType",
    "Episode",
    "EpisodeSeed",
    "LayoutHints",
    "OutlinePage",
    "Page",
    "PageStatus",
    "PanelDialogue",
    "PlannerCharacter",
    "PlannerOutline",
    # Lifecycle events
    "EpisodeEvent",
    "PageDone",
    "PageFailed",
    "PageProgress",
    "PlanningComplete",
    "PlanningProgress",
    "PlanningStarted",
    "event_to_dict",
    # Renderer contract
    "CharacterRenderRequest",
    "CharacterRenderResult",
    "PageRenderRequest",
    "PageRenderResult",
]
