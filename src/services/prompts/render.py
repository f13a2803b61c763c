"""Image prompt assembly for manga pages and character reference sheets."""

from models.episode import OutlinePage
from models.render import CharacterRenderRequest, PageRenderRequest

PAGE_WIDTH = 1024
PAGE_HEIGHT = 1536
PAGE_ASPECT_RATIO = "2:3"

TECHNICAL_REQUIREMENTS = [
    f"- Black and white manga artwork with consistent {PAGE_ASPECT_RATIO} aspect ratio ({PAGE_WIDTH}x{PAGE_HEIGHT} pixels)",
    "- Clean panel borders with proper gutters between panels",
    "- Dynamic camera angles and compositions that match the dialogue context",
    "- Expressive character poses and facial expressions that convey the emotions in dialogue",
    "- Appropriate use of screentones for shading and effects",
    "- Speed lines and motion effects where appropriate for action",
    "- Professional manga page layout with clear visual flow",
    "- High contrast and clear line art",
    "- Visual storytelling that matches dialogue context without including actual text",
    "- Speech bubble spaces where dialogue would appear (empty white bubbles)",
]

NO_TEXT_INSTRUCTION = (
    "Dialogue and text context (for visual storytelling - DO NOT include text in image):"
)
EDIT_DIRECTIVE = "Modify the provided base image without redrawing characters from scratch."


def format_dialogue_context(outline: OutlinePage) -> str:
    """Render panel dialogue as staging notes, one line per entry."""
    lines = []
    for d in outline.dialogues:
        speaker = f"{d.character}: " if d.character else ""
        lines.append(f'Panel {d.panel_number} - {d.type.value}: {speaker}"{d.text}"')
    return "\n".join(lines)


def build_page_prompt(request: PageRenderRequest, has_character_refs: bool) -> str:
    """Build the text prompt for one manga page.

    Args:
        request: The page render request
        has_character_refs: Whether character reference images are attached

    Returns:
        Prompt text; image attachments are added separately by the renderer
    """
    outline = request.outline
    dialogue_context = format_dialogue_context(outline)

    lines: list[str] = [
        f'Generate a manga page image for "{request.episode_title}".',
        "",
        f"Page {request.page_number} story beat: {outline.beat}",
        f"Setting: {outline.setting}",
        f"Key visual actions: {', '.join(outline.key_actions)}",
        "",
    ]

    if dialogue_context:
        lines += [NO_TEXT_INSTRUCTION, dialogue_context, ""]

    lines += [
        f"Panel layout: {outline.layout_hints.panels} panels arranged with {outline.layout_hints.notes}",
        "",
        # page 1's style is authoritative for the whole episode
        f"Art style: {request.visual_style}",
        "",
    ]

    if outline.new_characters:
        intro = ", ".join(f"{c.name} - {c.traits or 'new character'}" for c in outline.new_characters)
        lines += [f"New characters to introduce: {intro}", ""]

    if has_character_refs:
        lines.append(
            "Character consistency: Use the attached reference images to keep faces/outfits consistent across pages."
        )
    if outline.prompt:
        lines.append(f"Page prompt (with character tags): {outline.prompt}")
    lines.append("")

    if request.edit_prompt:
        lines.append(f"Edit request: {request.edit_prompt}")
    if request.base_image_url:
        lines.append(EDIT_DIRECTIVE)
    lines += [
        "Preserve character identity, outfits, and overall style. Maintain panel layout unless edits request otherwise.",
        "",
    ]

    if request.style_ref_urls:
        lines += ["Match the overall style of the attached style reference images.", ""]

    lines += ["Technical requirements:", *TECHNICAL_REQUIREMENTS, ""]
    lines.append(
        f"Output: A complete manga page as a single image, exactly {PAGE_WIDTH}x{PAGE_HEIGHT} pixels "
        f"({PAGE_ASPECT_RATIO} ratio), black and white."
    )
    return "\n".join(lines)


def build_character_prompt(request: CharacterRenderRequest) -> str:
    """Build the prompt for a character reference sheet."""
    return "\n".join([
        "Create a clean character reference image for a manga.",
        f"Character: {request.name}",
        f"Design notes: {request.description}",
        f"Art style: {request.visual_style}",
        "Black-and-white manga line art with screentones, full-body or 3/4 view, neutral pose, no text.",
        "Transparent or white background. High-contrast, crisp lines. Centered composition.",
    ])
