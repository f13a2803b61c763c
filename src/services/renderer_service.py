"""Renderer Service - manga page and character art via the Gemini image model.

Pages are conditioned on character reference sheets, user style references and,
when editing, the prior page image. Provider failures are raised (never
replaced by placeholders) so the orchestrator's retry policy applies. Only a
missing object store yields placeholder URLs, after the model call succeeded.
"""

import base64
import json
import logging
import random
import re
import time
from typing import Optional
from urllib.parse import quote

import httpx

from models.episode import Character
from models.render import (
    CharacterRenderRequest,
    CharacterRenderResult,
    PageRenderRequest,
    PageRenderResult,
)
from services.characters import extract_asset_tags, sanitize_asset_filename
from services.errors import ProviderError, ProviderUnavailableError
from services.prompts.render import (
    PAGE_ASPECT_RATIO,
    PAGE_HEIGHT,
    PAGE_WIDTH,
    build_character_prompt,
    build_page_prompt,
)
from services.r2_storage import ObjectStore

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

SEED_MAX = 999_999


def episode_asset_dir(title: str) -> str:
    """Storage folder for an episode, e.g. ``episodes/Night_Shift``."""
    return "episodes/" + re.sub(r"[^a-zA-Z0-9]", "_", title)


def select_character_refs(assets: list[Character], page_prompt: Optional[str]) -> list[Character]:
    """Pick which character sheets to attach to a page.

    Only characters with an image are eligible. When the page prompt carries
    ``<asset_filename>`` tags, only tagged characters are attached; otherwise
    all eligible ones are. Tags that match nobody are ignored.
    """
    available = [c for c in assets if c.image_url]
    tags = extract_asset_tags(page_prompt)
    if not tags:
        return available
    wanted = {sanitize_asset_filename(tag) for tag in tags}
    return [c for c in available if c.asset_filename in wanted]


class RendererService:
    """Draws manga pages and character reference images."""

    def __init__(
        self,
        api_key: Optional[str],
        model_name: str = "gemini-2.5-flash-image-preview",
        storage: Optional[ObjectStore] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the renderer.

        Args:
            api_key: Gemini API key (None disables rendering)
            model_name: Gemini image model identifier
            storage: Object store for uploads; None returns placeholder URLs
            client: HTTP client (tests)
        """
        self.api_key = api_key
        self.model_name = model_name
        self.storage = storage
        # Long timeout for image generation (can take a while)
        self.client = client or httpx.AsyncClient(timeout=120.0)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def generate_page(self, request: PageRenderRequest) -> PageRenderResult:
        """Render one manga page and upload it.

        Args:
            request: Page outline and context

        Returns:
            PageRenderResult with the public image URL and the seed used

        Raises:
            ProviderUnavailableError: If the API key is missing or Gemini is unreachable
            ProviderError: If Gemini returns no usable image or the upload fails
        """
        if not self.is_configured():
            raise ProviderUnavailableError("Renderer unavailable: GEMINI_API_KEY not set")

        seed = request.seed if request.seed is not None else random.randint(0, SEED_MAX)
        character_refs = select_character_refs(request.character_assets, request.outline.prompt)
        prompt = build_page_prompt(request, has_character_refs=bool(character_refs))

        parts: list[dict] = [{"text": prompt}]
        if request.base_image_url:
            parts.append(
                await self._image_part(request.base_image_url, f"Reference current page image: {request.base_image_url}")
            )
        for character in character_refs:
            parts.append(
                await self._image_part(character.image_url, f"Reference image for {character.name}: {character.image_url}")
            )
        for url in request.style_ref_urls:
            parts.append(await self._image_part(url, f"Style reference: {url}"))

        logger.info(
            f"Generating page {request.page_number} with {self.model_name} "
            f"(seed={seed}, {len(character_refs)} character ref(s), "
            f"{len(request.style_ref_urls)} style ref(s), edit={request.is_edit})"
        )
        logger.debug(f"Prompt: {prompt[:200]}...")

        image_bytes, mime_type = await self._generate_image(parts)

        padded = f"{request.page_number:02d}"
        path = f"{episode_asset_dir(request.episode_title)}/page_{padded}_{seed}.png"
        if self.storage is not None:
            image_url = await self.storage.upload_image(image_bytes, path, mime_type)
        else:
            logger.warning("Storage not configured, cannot save generated page image")
            short_beat = quote(request.outline.beat[:40])
            image_url = (
                f"https://placehold.co/{PAGE_WIDTH}x{PAGE_HEIGHT}/00FF00/000000"
                f"?text=GENERATED+PAGE+{padded}%0A{short_beat}%0AStorage+Disabled"
            )

        logger.info(f"Generated page {request.page_number}: {image_url}")
        return PageRenderResult(image_url=image_url, seed=seed)

    async def generate_character(self, request: CharacterRenderRequest) -> CharacterRenderResult:
        """Render a character reference sheet.

        Raises:
            ProviderUnavailableError: If the API key is missing or Gemini is unreachable
            ProviderError: If Gemini returns no image or the upload fails
        """
        if not self.is_configured():
            raise ProviderUnavailableError("Renderer unavailable: GEMINI_API_KEY not set")

        prompt = build_character_prompt(request)
        logger.info(f"Generating character sheet for {request.name} ({request.asset_filename})")
        image_bytes, mime_type = await self._generate_image([{"text": prompt}])

        path = f"{episode_asset_dir(request.episode_title)}/characters/{request.asset_filename}"
        if self.storage is not None:
            image_url = await self.storage.upload_image(image_bytes, path, mime_type)
        else:
            image_url = f"https://placehold.co/768x1024/444/EEE?text={quote(request.name)}"
        return CharacterRenderResult(image_url=image_url)

    async def _image_part(self, url: str, fallback_text: str) -> dict:
        """Download a reference image as an inline part, or describe it by URL."""
        try:
            response = await self.client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to fetch reference image {url}: {e}")
            return {"text": fallback_text}

        mime_type = response.headers.get("content-type", "image/png").split(";")[0]
        if not mime_type.startswith("image/"):
            mime_type = "image/png"
        return {
            "inlineData": {
                "mimeType": mime_type,
                "data": base64.b64encode(response.content).decode("ascii"),
            }
        }

    async def _generate_image(self, parts: list[dict]) -> tuple[bytes, str]:
        """Call Gemini generateContent and return the first image part.

        Returns:
            (image bytes, mime type)
        """
        url = f"{GEMINI_API_BASE}/models/{self.model_name}:generateContent"
        headers = {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
        }
        payload = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "temperature": 0.7,
                "topK": 40,
                "topP": 0.95,
                "responseModalities": ["TEXT", "IMAGE"],
                "imageConfig": {"aspectRatio": PAGE_ASPECT_RATIO},
            },
        }

        start_time = time.time()
        try:
            response = await self.client.post(url, headers=headers, json=payload)
            response.raise_for_status()
            result_data = response.json()
        except httpx.TimeoutException as e:
            raise ProviderUnavailableError("Gemini image request timed out") from e
        except httpx.HTTPStatusError as e:
            try:
                error_detail = e.response.json().get("error", {}).get("message", str(e))
            except (json.JSONDecodeError, AttributeError):
                error_detail = e.response.text or str(e)
            if e.response.status_code in (401, 403):
                raise ProviderUnavailableError(f"Gemini rejected credentials: {error_detail}") from e
            raise ProviderError(f"Gemini API error: {error_detail}") from e
        except httpx.RequestError as e:
            raise ProviderUnavailableError(f"Gemini unreachable: {e}") from e
        except json.JSONDecodeError as e:
            raise ProviderError("Gemini returned a non-JSON response") from e

        generation_time_ms = int((time.time() - start_time) * 1000)

        candidates = result_data.get("candidates") or []
        if not candidates:
            raise ProviderError("No image candidates generated by Gemini")

        text_reply = None
        for part in (candidates[0].get("content") or {}).get("parts") or []:
            inline_data = part.get("inlineData") or {}
            mime_type = inline_data.get("mimeType") or ""
            if inline_data.get("data") and mime_type.startswith("image/"):
                image_bytes = base64.b64decode(inline_data["data"])
                logger.info(
                    f"Gemini returned {len(image_bytes)} bytes ({mime_type}) in {generation_time_ms}ms"
                )
                return image_bytes, mime_type
            if part.get("text") and text_reply is None:
                text_reply = part["text"]

        if text_reply:
            logger.debug(f"Received text response instead of image: {text_reply[:100]}")
            raise ProviderError("Model returned text instead of image")
        raise ProviderError("No image data found in Gemini response")

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
