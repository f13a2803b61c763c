"""Planner service - ten-page manga outlines from an episode seed using Google GenAI."""

import json
import logging
from typing import Any, Optional

from google.genai import Client
from google.genai import errors as genai_errors
from google.genai import types

from models.episode import PAGES_PER_EPISODE, EpisodeSeed, PlannerOutline
from services.errors import ProviderError, ProviderUnavailableError
from services.prompts import strip_markdown_code_blocks
from services.prompts.planner import PLANNER_OUTLINE, PLANNER_SCHEMA, PLANNER_SYSTEM

logger = logging.getLogger(__name__)


def extract_json(text: str) -> Any:
    """Parse JSON out of an LLM reply.

    Tries, in order: the whole reply, the outermost ``{...}`` slice, and the
    first fenced code block.

    Raises:
        ProviderError: If no candidate parses
    """
    candidates = [text]

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    candidates.append(strip_markdown_code_blocks(text))

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise ProviderError("Failed to parse planner JSON")


def parse_outline(data: Any) -> PlannerOutline:
    """Validate the planner JSON shape and convert it to a PlannerOutline.

    Pages are re-ordered by page number; numbers must be exactly 1-10.

    Raises:
        ProviderError: If the shape is not a ten-page outline
    """
    if not isinstance(data, dict) or not isinstance(data.get("pages"), list):
        raise ProviderError("Planner returned invalid JSON shape")
    if len(data["pages"]) != PAGES_PER_EPISODE:
        raise ProviderError(
            f"Planner returned {len(data['pages'])} pages, expected {PAGES_PER_EPISODE}"
        )
    if not all(isinstance(p, dict) for p in data["pages"]):
        raise ProviderError("Planner returned invalid JSON shape")

    try:
        outline = PlannerOutline.from_dict(data)
    except (TypeError, ValueError) as e:
        raise ProviderError(f"Planner returned malformed page data: {e}") from e

    numbers = sorted(p.page_number for p in outline.pages)
    if numbers != list(range(1, PAGES_PER_EPISODE + 1)):
        raise ProviderError(f"Planner returned page numbers {numbers}, expected 1-{PAGES_PER_EPISODE}")
    outline.pages.sort(key=lambda p: p.page_number)
    return outline


def build_outline_prompt(seed: EpisodeSeed) -> str:
    return PLANNER_OUTLINE.format(
        title=seed.title,
        genre_tags=json.dumps(list(seed.genre_tags)),
        tone=seed.tone,
        setting=seed.setting,
        visual_vibe=seed.visual_vibe or "",
        description=seed.description or "",
        cast=json.dumps([c.to_dict() for c in seed.cast]),
        schema=PLANNER_SCHEMA,
    )


class PlannerService:
    """Turns an episode seed into a structured ten-page outline using Gemini."""

    def __init__(
        self,
        api_key: Optional[str],
        model_name: str = "gemini-2.5-flash",
        client: Optional[Client] = None,
    ):
        """Initialize the planner.

        Args:
            api_key: Google GenAI API key (None disables the planner)
            model_name: Gemini model to use
            client: Pre-built GenAI client (tests)
        """
        self.api_key = api_key
        self.model_name = model_name
        self._client = client

    @property
    def client(self) -> Client:
        if self._client is None:
            if not self.api_key:
                raise ProviderUnavailableError("Planner unavailable: GEMINI_API_KEY not set")
            self._client = Client(api_key=self.api_key)
        return self._client

    async def generate_outline(self, seed: EpisodeSeed) -> PlannerOutline:
        """Generate a ten-page outline.

        Args:
            seed: The episode seed

        Returns:
            Validated PlannerOutline

        Raises:
            ProviderUnavailableError: If credentials are missing or Gemini is unreachable
            ProviderError: If the response is not a valid ten-page outline
        """
        if not self.api_key and self._client is None:
            raise ProviderUnavailableError("Planner unavailable: GEMINI_API_KEY not set")

        prompt = build_outline_prompt(seed)
        logger.info(f"Requesting outline for '{seed.title}' from {self.model_name}")

        try:
            response = await self.client.aio.models.generate_content(
                model=self.model_name,
                contents=prompt,
                config=types.GenerateContentConfig(
                    system_instruction=PLANNER_SYSTEM,
                    response_mime_type="application/json",
                ),
            )
        except genai_errors.ClientError as e:
            if getattr(e, "code", None) in (401, 403):
                raise ProviderUnavailableError(f"Planner rejected credentials: {e}") from e
            raise ProviderError(f"Planner request failed: {e}") from e
        except genai_errors.APIError as e:
            raise ProviderUnavailableError(f"Planner unavailable: {e}") from e

        if not response.text:
            raise ProviderError("Planner returned an empty response")

        outline = parse_outline(extract_json(response.text))
        logger.info(
            f"Planner produced {len(outline.pages)} pages and "
            f"{len(outline.characters)} character(s) for '{seed.title}'"
        )
        return outline
