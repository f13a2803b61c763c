"""Planner prompt templates.

Contains prompts for:
- PLANNER_SYSTEM: System instruction for the manga production planner
- PLANNER_SCHEMA: JSON shape the planner must return
- PLANNER_OUTLINE: User prompt for the ten-page outline
"""

PLANNER_SYSTEM = """You are a manga production planner. Return STRICT JSON that adheres to the provided schema.
Keep all values concise but specific and visual.
Also prepare a concise character bible with stable asset filenames to be used as image references like <aoi.png>.
Provide structured dialogue suggestions per panel for each page. These dialogues are for overlays (not baked into the image).
When writing page prompts, explicitly reference characters using <asset_filename> tags and include staging."""


PLANNER_SCHEMA = """{
  "characters": [
    {
      "name": "Aoi",
      "description": "concise visual design: hair/eyes/outfit/silhouette/props/pose",
      "asset_filename": "aoi.png"
    }
  ],
  "pages": [
    {
      "page_number": 1,
      "beat": "One-sentence story beat for this page",
      "setting": "Where/when",
      "key_actions": ["visually observable actions only"],
      "layout_hints": { "panels": 3-6, "notes": "angles, energy, pacing" },
      "visual_style": "global style description for the whole episode",
      "introduce_new_character": false,
      "new_characters": [],
      "dialogues": [
        {
          "panel_number": 1,
          "character": "Aoi",
          "text": "What was that sound?",
          "type": "dialogue"
        },
        {
          "panel_number": 2,
          "character": null,
          "text": "The wind howled through the empty streets",
          "type": "narration"
        }
      ],
      "prompt": "<aoi.png> stands on the rooftop at dusk..."
    }
    // up to page 10
  ]
}"""


# Template placeholders: {title}, {genre_tags}, {tone}, {setting}, {visual_vibe},
# {description}, {cast}, {schema}
PLANNER_OUTLINE = """Make a 10-page outline for a manga episode based on this seed:
- title: {title}
- genre_tags: {genre_tags}
- tone: {tone}
- setting: {setting}
- visual_vibe: {visual_vibe}
- description: {description}
- cast: {cast}

Schema:
{schema}

Constraints:
- Page 1 establishes the style, cast silhouettes/outfits, time-of-day, and overall look.
- Pages 2-10 must escalate or vary setting per beat, while staying within the same art style.
- characters: include ALL main cast (from seed) + any new characters introduced by outline.
- asset_filename: snake_case, ASCII only, .png extension, unique per character.
- In each page.prompt reference characters via <asset_filename> tags used in characters[].
- dialogues: Write compelling dialogue, thoughts, narration, and sound effects for each panel.
- Include 3-6 dialogue entries per page matching the panel count in layout_hints.
- Dialogue should advance the story, reveal character, and create engaging manga reading experience.
- Output must be valid JSON and fit the schema exactly.

Return ONLY the JSON. No prose, no markdown fences."""
