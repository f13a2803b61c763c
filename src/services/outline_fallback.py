"""Deterministic stub outline used when the planner is unavailable.

The structure is fixed (ten pages, establishing beat on page 1, escalation beats
afterwards, one synthetic character introduced on page 2) so an episode can
always be planned and rendered even without an LLM. Only panel counts vary.
"""

import random
from typing import Optional

from models.episode import (
    PAGES_PER_EPISODE,
    CastMember,
    DialogueType,
    EpisodeSeed,
    LayoutHints,
    OutlinePage,
    PanelDialogue,
    PlannerCharacter,
    PlannerOutline,
)
from services.characters import sanitize_asset_filename

DEFAULT_LEAD = "Aoi"
DEFAULT_SUPPORT = "Kenji"

STUB_VISUAL_STYLE = (
    "high-contrast manga B/W; crisp screentones; dynamic speedlines; cinematic angles"
)

STUB_RIVAL = CastMember(
    name="Mysterious Rival",
    traits="enigmatic",
    silhouette="tall",
    outfit="cloak",
    notable_prop="mask",
)


def _cast_names(seed: EpisodeSeed) -> tuple[str, str]:
    lead = seed.cast[0].name if len(seed.cast) > 0 and seed.cast[0].name else DEFAULT_LEAD
    support = seed.cast[1].name if len(seed.cast) > 1 and seed.cast[1].name else DEFAULT_SUPPORT
    return lead, support


def _page_dialogues(page_number: int, panel_count: int, lead: str, support: str) -> list[PanelDialogue]:
    dialogues = []
    for panel in range(1, panel_count + 1):
        if page_number == 1:
            if panel == 1:
                dialogues.append(PanelDialogue(panel, "The city never sleeps...", DialogueType.NARRATION))
            elif panel == 2:
                dialogues.append(PanelDialogue(panel, "Something's not right here.", DialogueType.DIALOGUE, lead))
            else:
                dialogues.append(PanelDialogue(panel, "We should be careful.", DialogueType.DIALOGUE, support))
        else:
            speaker = lead if panel % 2 == 0 else support
            dialogues.append(
                PanelDialogue(
                    panel,
                    f"Page {page_number}, panel {panel} dialogue.",
                    DialogueType.DIALOGUE,
                    speaker,
                )
            )
    return dialogues


def build_stub_outline(seed: EpisodeSeed, rng: Optional[random.Random] = None) -> PlannerOutline:
    """Build a ten-page outline from the seed alone.

    Args:
        seed: The episode seed
        rng: Random source for panel counts

    Returns:
        A PlannerOutline with ten pages and a two-member character bible
    """
    rng = rng or random.Random()
    lead, support = _cast_names(seed)
    lead_file = sanitize_asset_filename(lead)
    support_file = sanitize_asset_filename(support)

    pages = []
    for number in range(1, PAGES_PER_EPISODE + 1):
        panel_count = rng.randint(3, 6)
        first = number == 1
        pages.append(
            OutlinePage(
                page_number=number,
                beat=(
                    f"Establish style and cast in {seed.setting}."
                    if first
                    else f"Continue the action established prior; escalate tension (page {number})."
                ),
                setting=seed.setting if first else f"{seed.setting} (varied)",
                key_actions=(
                    ["establishing shot", "close-ups of cast"] if first else ["dynamic action moment"]
                ),
                layout_hints=LayoutHints(panels=panel_count, notes="cinematic angles"),
                visual_style=STUB_VISUAL_STYLE if first else None,
                introduce_new_character=number == 2,
                new_characters=[STUB_RIVAL] if number == 2 else [],
                dialogues=_page_dialogues(number, panel_count, lead, support),
                prompt=(
                    f"<{lead_file}> and <{support_file}> appear in the city skyline establishing shot."
                    if first
                    else None
                ),
            )
        )

    characters = [
        PlannerCharacter(
            name=lead,
            description="protagonist; short dark hair; determined eyes; school uniform with jacket; athletic silhouette",
            asset_filename=lead_file,
        ),
        PlannerCharacter(
            name=support,
            description="supporting; messy hair; energetic; casual streetwear; scarf",
            asset_filename=support_file,
        ),
    ]
    return PlannerOutline(pages=pages, characters=characters)
