"""Generation orchestrator - plans episodes and drives character and page rendering.

Planning is synchronous from the caller's point of view; character art and page
generation run as detached asyncio tasks whose outcome is only observable through
the episode's event channel (``EventBus``). Within one episode, page work is
serialized with a per-episode lock; different episodes never block each other.
"""

import asyncio
import logging
import os
import random
import secrets
import time
import uuid
import weakref
from dataclasses import dataclass
from typing import Any, Optional

from models.episode import (
    PAGES_PER_EPISODE,
    Character,
    Episode,
    EpisodeSeed,
    OutlinePage,
    Page,
    PageStatus,
    PanelDialogue,
    PlannerCharacter,
    PlannerOutline,
)
from models.events import (
    PageDone,
    PageFailed,
    PageProgress,
    PlanningComplete,
    PlanningProgress,
    PlanningStarted,
)
from models.render import CharacterRenderRequest, PageRenderRequest
from services.characters import derive_characters
from services.episode_repository import EpisodeRepository
from services.errors import NotFoundError, ProviderError, ValidationError
from services.event_bus import EventBus
from services.outline_fallback import build_stub_outline
from services.planner_service import PlannerService
from services.r2_storage import ObjectStore
from services.renderer_service import RendererService, episode_asset_dir
from utils.logging import clear_episode_context, set_episode_context

logger = logging.getLogger(__name__)

DEFAULT_VISUAL_STYLE = "manga style"

PAGE_ATTEMPTS = 3
REGENERATE_ATTEMPTS = 2

STYLE_REF_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}

REQUIRED_SEED_FIELDS = ("title", "genre_tags", "tone", "setting", "cast")


def validate_seed_payload(payload: Any) -> EpisodeSeed:
    """Check a raw seed mapping and build an EpisodeSeed.

    Raises:
        ValidationError: If a required field is missing or empty, or a cast
            member has no name
    """
    if not isinstance(payload, dict):
        raise ValidationError("Seed must be a JSON object")

    missing = []
    for key in REQUIRED_SEED_FIELDS:
        value = payload.get(key)
        if isinstance(value, str):
            value = value.strip()
        if not value:
            missing.append(key)
    if missing:
        raise ValidationError(f"Missing required seed fields: {', '.join(missing)}")

    if not isinstance(payload["genre_tags"], list):
        raise ValidationError("genre_tags must be a list of strings")
    if not isinstance(payload["cast"], list) or not all(
        isinstance(c, dict) and str(c.get("name") or "").strip() for c in payload["cast"]
    ):
        raise ValidationError("cast must be a list of members that each have a name")

    return EpisodeSeed.from_dict(payload)


@dataclass
class PlanResult:
    """What ``plan_episode`` hands back once planning is complete."""

    episode_id: str
    outline: PlannerOutline

    def to_dict(self) -> dict:
        return {"episode_id": self.episode_id, "outline": self.outline.to_dict()}


class GenerationOrchestrator:
    """Coordinates planner, renderer, storage and repository for episodes."""

    def __init__(
        self,
        repository: EpisodeRepository,
        event_bus: EventBus,
        planner: PlannerService,
        renderer: RendererService,
        storage: Optional[ObjectStore] = None,
        renderer_model: Optional[str] = None,
        page_backoff_seconds: float = 0.3,
        regenerate_backoff_seconds: float = 0.4,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the orchestrator.

        Args:
            repository: Episode storage
            event_bus: Per-episode event channels
            planner: Outline generator
            renderer: Page and character image generator
            storage: Object store for style references (None disables uploads)
            renderer_model: Image model identifier recorded on new episodes
            page_backoff_seconds: Base delay between page generation attempts
            regenerate_backoff_seconds: Base delay between regeneration attempts
            rng: Random source for the stub outline (tests)
        """
        self.repository = repository
        self.events = event_bus
        self.planner = planner
        self.renderer = renderer
        self.storage = storage
        self.renderer_model = renderer_model or renderer.model_name
        self.page_backoff_seconds = page_backoff_seconds
        self.regenerate_backoff_seconds = regenerate_backoff_seconds
        self.rng = rng or random.Random()

        # Locks disappear once no coroutine holds a reference to them
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

        # Keep references to background tasks to prevent garbage collection
        self._background_tasks: set[asyncio.Task] = set()

    def _lock_for(self, episode_id: str) -> asyncio.Lock:
        lock = self._locks.get(episode_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[episode_id] = lock
        return lock

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    async def wait_for_background_tasks(self) -> None:
        """Wait until every detached task has finished (CLI and shutdown)."""
        while self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    async def cancel_background_tasks(self) -> None:
        """Cancel detached tasks still running (server shutdown)."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(f"Cancelled {len(tasks)} background task(s)")

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def plan_episode(self, seed: EpisodeSeed) -> PlanResult:
        """Plan a new episode and persist it with ten queued pages.

        Planner failures of any kind fall back to the stub outline, so this
        always yields a ten-page outline. Character art is started in the
        background and never affects the result.

        Args:
            seed: Validated episode seed

        Returns:
            PlanResult with the new episode id and its outline
        """
        episode_id = str(uuid.uuid4())
        self.events.emit(
            episode_id, PlanningStarted(episode_id, "AI is analyzing your story concept...")
        )
        self.events.emit(
            episode_id, PlanningProgress(episode_id, "Generating 10-page story outline...")
        )

        try:
            outline = await self.planner.generate_outline(seed)
            self.events.emit(
                episode_id, PlanningProgress(episode_id, "Creating character designs...")
            )
        except Exception as e:
            logger.warning(f"Planner failed for '{seed.title}', using stub outline: {e}")
            self.events.emit(
                episode_id, PlanningProgress(episode_id, "Using fallback story template...")
            )
            outline = build_stub_outline(seed, self.rng)

        characters = derive_characters(seed, outline)
        episode = Episode(
            id=episode_id,
            seed=seed,
            outline=outline,
            pages=[
                Page(id=str(uuid.uuid4()), episode_id=episode_id, page_number=n)
                for n in range(1, PAGES_PER_EPISODE + 1)
            ],
            renderer_model=self.renderer_model,
        )
        await self.repository.create_episode(episode)
        await self.repository.upsert_characters(episode_id, characters)
        logger.info(
            f"Planned episode {episode_id} '{seed.title}' with {len(characters)} character(s)"
        )

        self.events.emit(
            episode_id,
            PlanningComplete(episode_id, "Story planning complete! Ready to generate pages."),
        )

        self._spawn(self._generate_characters_in_background(episode_id))
        return PlanResult(episode_id=episode_id, outline=outline)

    # ------------------------------------------------------------------
    # Characters
    # ------------------------------------------------------------------

    async def _generate_characters_in_background(self, episode_id: str) -> None:
        set_episode_context(episode_id)
        try:
            await self.generate_characters(episode_id)
        except Exception as e:
            logger.error(f"Character generation failed for episode {episode_id}: {e}")
        finally:
            clear_episode_context()

    async def generate_characters(self, episode_id: str) -> list[Character]:
        """Render reference art for every character that has no image yet.

        Failures are logged per character and leave that character imageless.

        Returns:
            The episode's roster after the pass

        Raises:
            NotFoundError: If the episode does not exist
        """
        async with self._lock_for(episode_id):
            return await self._generate_missing_characters(episode_id)

    async def ensure_characters(self, episode_id: str) -> list[Character]:
        """Retry character art for characters still lacking an image."""
        return await self.generate_characters(episode_id)

    async def _generate_missing_characters(self, episode_id: str) -> list[Character]:
        episode = await self.repository.get_episode(episode_id)
        if episode is None:
            raise NotFoundError(f"Episode {episode_id} not found")

        visual_style = episode.visual_style or DEFAULT_VISUAL_STYLE
        missing = [c for c in episode.characters if not c.image_url]
        if not missing:
            return episode.characters

        logger.info(f"Generating art for {len(missing)} character(s) in episode {episode_id}")
        for character in missing:
            request = CharacterRenderRequest(
                episode_title=episode.seed.title,
                name=character.name,
                description=character.description or "",
                asset_filename=character.asset_filename,
                visual_style=visual_style,
            )
            try:
                result = await self.renderer.generate_character(request)
            except Exception as e:
                logger.warning(f"Character art failed for {character.name}: {e}")
                continue
            await self.repository.set_character_image(
                episode_id,
                _as_planner_character(character),
                result.image_url,
            )
        return await self.repository.list_characters(episode_id)

    # ------------------------------------------------------------------
    # Page generation
    # ------------------------------------------------------------------

    def launch_generation(self, episode_id: str) -> asyncio.Task:
        """Start page generation as a detached task.

        The returned task never raises; if the whole run fails (for example
        the episode does not exist) a ``page_failed`` event with page 0 is
        emitted on the episode's channel instead.
        """
        return self._spawn(self._run_generation(episode_id))

    async def _run_generation(self, episode_id: str) -> None:
        set_episode_context(episode_id)
        try:
            await self.start_generation(episode_id)
        except Exception as e:
            logger.error(f"Generation failed for episode {episode_id}: {e}")
            self.events.emit(episode_id, PageFailed(episode_id, 0, str(e)))
        finally:
            clear_episode_context()

    async def start_generation(self, episode_id: str) -> None:
        """Generate pages 1-10 in order, one at a time.

        Page failures are recorded on the page and broadcast; they do not stop
        the loop.

        Raises:
            NotFoundError: If the episode or its outline does not exist
        """
        episode = await self.repository.get_episode(episode_id)
        if episode is None or episode.outline is None:
            raise NotFoundError(f"Episode {episode_id} or its outline not found")

        await self.ensure_characters(episode_id)

        for page_number in range(1, PAGES_PER_EPISODE + 1):
            async with self._lock_for(episode_id):
                episode = await self.repository.get_episode(episode_id)
                page = episode.page(page_number)
                if page is None:
                    logger.error(f"Episode {episode_id} has no page {page_number}")
                    continue
                try:
                    await self._generate_page(episode, page)
                except NotFoundError as e:
                    logger.error(str(e))

        logger.info(f"Generation finished for episode {episode_id}")

    async def _generate_page(
        self, episode: Episode, page: Page
    ) -> tuple[Page, Optional[Exception]]:
        """Run the three-attempt generation loop for one page. Caller holds the lock.

        Returns:
            The stored page and, when it ended failed, the last render error
        """
        page = await self._set_status(page, PageStatus.IN_PROGRESS)
        self.events.emit(episode.id, PageProgress(episode.id, page.page_number, 5))

        try:
            outline_page = self._outline_page(episode, page)
        except NotFoundError as e:
            # Corrupt outline: fail the page without spending render attempts
            await self._mark_failed(episode.id, page, str(e))
            raise

        character_assets = [c for c in episode.characters if c.image_url]
        style_ref_urls = await self.list_style_refs(episode.id)

        last_error: Optional[Exception] = None
        for attempt in range(1, PAGE_ATTEMPTS + 1):
            self.events.emit(
                episode.id, PageProgress(episode.id, page.page_number, min(25 * attempt, 70))
            )
            request = PageRenderRequest(
                page_number=page.page_number,
                outline=outline_page,
                episode_title=episode.seed.title,
                visual_style=episode.visual_style or DEFAULT_VISUAL_STYLE,
                seed=page.seed,
                character_assets=character_assets,
                style_ref_urls=style_ref_urls,
            )
            try:
                result = await self.renderer.generate_page(request)
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Page {page.page_number} attempt {attempt}/{PAGE_ATTEMPTS} failed: {_describe(e)}"
                )
                if attempt < PAGE_ATTEMPTS:
                    await asyncio.sleep(self.page_backoff_seconds * attempt)
                continue
            return await self._mark_done(episode.id, page, result.image_url, result.seed), None

        page = await self._mark_failed(episode.id, page, _describe(last_error))
        return page, last_error

    def _outline_page(self, episode: Episode, page: Page) -> OutlinePage:
        outline_page = episode.outline.page(page.page_number) if episode.outline else None
        if outline_page is None:
            raise NotFoundError(f"No outline found for page {page.page_number}")
        return outline_page

    async def _set_status(self, page: Page, status: PageStatus, **changes: Any) -> Page:
        if page.status == status == PageStatus.IN_PROGRESS:
            # Stuck from an interrupted run; pass through queued to restart it
            page.transition_to(PageStatus.QUEUED)
        page.transition_to(status)
        return await self.repository.update_page(page.id, status=page.status, **changes)

    async def _mark_done(self, episode_id: str, page: Page, image_url: str, seed: int) -> Page:
        page = await self._set_status(
            page,
            PageStatus.DONE,
            image_url=image_url,
            seed=seed,
            version=page.version + 1,
            error=None,
        )
        logger.info(f"Page {page.page_number} done (v{page.version})")
        self.events.emit(
            episode_id, PageDone(episode_id, page.page_number, image_url, seed, page.version)
        )
        return page

    async def _mark_failed(self, episode_id: str, page: Page, error: str) -> Page:
        page = await self._set_status(page, PageStatus.FAILED, error=error)
        logger.error(f"Page {page.page_number} failed: {error}")
        self.events.emit(episode_id, PageFailed(episode_id, page.page_number, error))
        return page

    # ------------------------------------------------------------------
    # Regenerate / retry
    # ------------------------------------------------------------------

    async def _load_page_context(self, page_id: str) -> tuple[Episode, Page]:
        page = await self.repository.get_page(page_id)
        if page is None:
            raise NotFoundError(f"Page {page_id} not found")
        episode = await self.repository.get_episode(page.episode_id)
        if episode is None or episode.outline is None:
            raise NotFoundError(f"Episode {page.episode_id} or its outline not found")
        return episode, page

    async def regenerate_page(
        self,
        page_id: str,
        edit_prompt: str,
        style_ref_urls: Optional[list[str]] = None,
    ) -> Page:
        """Edit an existing page image with a prompt (two attempts).

        The current image is sent as the base and the prompt as the change to
        make. On exhaustion the page is marked failed, ``page_failed`` is
        emitted and the last error is raised.

        Returns:
            The updated page

        Raises:
            NotFoundError: If the page, episode or outline entry is missing
            ProviderError: If both attempts fail
        """
        episode, page = await self._load_page_context(page_id)

        async with self._lock_for(episode.id):
            # Re-read under the lock so a finished generation run is visible
            episode, page = await self._load_page_context(page_id)
            outline_page = self._outline_page(episode, page)

            page = await self._set_status(page, PageStatus.IN_PROGRESS)
            self.events.emit(episode.id, PageProgress(episode.id, page.page_number, 10))

            character_assets = [c for c in episode.characters if c.image_url]
            last_error: Optional[Exception] = None
            for attempt in range(1, REGENERATE_ATTEMPTS + 1):
                request = PageRenderRequest(
                    page_number=page.page_number,
                    outline=outline_page,
                    episode_title=episode.seed.title,
                    visual_style=episode.visual_style or DEFAULT_VISUAL_STYLE,
                    character_assets=character_assets,
                    style_ref_urls=list(style_ref_urls or []),
                    base_image_url=page.image_url,
                    edit_prompt=edit_prompt,
                )
                try:
                    result = await self.renderer.generate_page(request)
                except Exception as e:
                    last_error = e
                    logger.warning(
                        f"Regenerate page {page.page_number} attempt "
                        f"{attempt}/{REGENERATE_ATTEMPTS} failed: {e}"
                    )
                    if attempt < REGENERATE_ATTEMPTS:
                        await asyncio.sleep(self.regenerate_backoff_seconds * attempt)
                    continue
                return await self._mark_done(episode.id, page, result.image_url, result.seed)

            await self._mark_failed(episode.id, page, _describe(last_error))
            raise _as_provider_error(last_error)

    async def retry_page(self, page_id: str) -> Page:
        """Reset a page to queued and run the full three-attempt generation for it.

        On exhaustion the page is marked failed, ``page_failed`` is emitted and
        the last error is raised.

        Returns:
            The page, done

        Raises:
            NotFoundError: If the page, episode or outline entry is missing
            ProviderError: If all three attempts fail
        """
        episode, page = await self._load_page_context(page_id)

        async with self._lock_for(episode.id):
            episode, page = await self._load_page_context(page_id)
            if page.status != PageStatus.QUEUED:
                page = await self._set_status(page, PageStatus.QUEUED, error=None)
            logger.info(f"Retrying page {page.page_number} of episode {episode.id}")
            page, error = await self._generate_page(episode, page)
        if page.status == PageStatus.FAILED:
            raise _as_provider_error(error)
        return page

    # ------------------------------------------------------------------
    # Reads and passthroughs
    # ------------------------------------------------------------------

    async def get_episode(self, episode_id: str) -> Episode:
        episode = await self.repository.get_episode(episode_id)
        if episode is None:
            raise NotFoundError(f"Episode {episode_id} not found")
        return episode

    async def get_page(self, page_id: str) -> Page:
        page = await self.repository.get_page(page_id)
        if page is None:
            raise NotFoundError(f"Page {page_id} not found")
        return page

    async def get_page_overlays(self, page_id: str) -> Any:
        return (await self.get_page(page_id)).overlays

    async def set_page_overlays(self, page_id: str, overlays: Any) -> Page:
        """Store a client overlay payload as-is."""
        await self.get_page(page_id)
        return await self.repository.update_page(page_id, overlays=overlays)

    async def get_page_dialogue(self, page_id: str) -> list[PanelDialogue]:
        """Outline dialogue for a page, empty when the outline page has none."""
        episode, page = await self._load_page_context(page_id)
        outline_page = episode.outline.page(page.page_number)
        return list(outline_page.dialogues) if outline_page else []

    async def list_style_refs(self, episode_id: str) -> list[str]:
        """Style reference URLs for an episode.

        Lists the episode's ``style_refs`` folder in object storage when it is
        enabled and non-empty, otherwise the URLs recorded at upload time.
        """
        episode = await self.repository.get_episode(episode_id)
        if episode is None:
            raise NotFoundError(f"Episode {episode_id} not found")

        if self.storage is not None:
            prefix = f"{episode_asset_dir(episode.seed.title)}/style_refs/"
            try:
                urls = await self.storage.list_public_urls(prefix)
            except ProviderError as e:
                logger.warning(f"Could not list style refs under {prefix}: {e}")
                urls = []
            if urls:
                return urls
        return await self.repository.list_style_refs(episode_id)

    async def upload_style_ref(
        self,
        episode_id: str,
        data: bytes,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> str:
        """Store a style reference image for an episode and record its URL.

        Returns:
            Public URL of the stored image (a placeholder when storage is disabled)

        Raises:
            NotFoundError: If the episode does not exist
            ValidationError: If the upload is empty
        """
        episode = await self.repository.get_episode(episode_id)
        if episode is None:
            raise NotFoundError(f"Episode {episode_id} not found")
        if not data:
            raise ValidationError("Style reference upload is empty")

        ext = os.path.splitext(filename or "")[1].lower()
        if ext not in STYLE_REF_EXTENSIONS:
            ext = ".png"
        name = f"{int(time.time() * 1000)}_{secrets.token_hex(4)}{ext}"
        path = f"{episode_asset_dir(episode.seed.title)}/style_refs/{name}"

        if self.storage is not None:
            url = await self.storage.upload_image(data, path, content_type or "image/png")
        else:
            logger.warning("Storage not configured, recording placeholder style reference")
            url = f"https://placehold.co/512x512/CCCCCC/333333?text=Style+Ref+{name}"

        await self.repository.add_style_ref(episode_id, url)
        logger.info(f"Stored style reference for episode {episode_id}: {url}")
        return url


def _as_planner_character(character: Character) -> PlannerCharacter:
    return PlannerCharacter(
        name=character.name,
        description=character.description or "",
        asset_filename=character.asset_filename,
    )


def _describe(error: Optional[Exception]) -> str:
    if error is None:
        return "unknown error"
    return str(error) or error.__class__.__name__


def _as_provider_error(error: Optional[Exception]) -> ProviderError:
    """The error to raise to a caller whose page ended failed."""
    if isinstance(error, ProviderError):
        return error
    wrapped = ProviderError(_describe(error))
    wrapped.__cause__ = error
    return wrapped
