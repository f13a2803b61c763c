"""Shared pytest fixtures for mangaloom tests."""

import random
import sys
import tempfile
from collections import defaultdict
from pathlib import Path
from typing import Dict, Generator
from unittest.mock import AsyncMock, Mock

import pytest

# Add src directory to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from models.episode import EpisodeSeed  # noqa: E402
from models.render import CharacterRenderResult, PageRenderResult  # noqa: E402
from services.episode_repository import InMemoryEpisodeRepository  # noqa: E402
from services.errors import ProviderError, ProviderUnavailableError  # noqa: E402
from services.event_bus import EventBus  # noqa: E402
from services.orchestrator import GenerationOrchestrator  # noqa: E402


class RecordingEventBus(EventBus):
    """EventBus that also keeps every emitted event, subscribers or not."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.emitted = []

    def emit(self, episode_id, event):
        self.emitted.append(event)
        super().emit(episode_id, event)

    def of_type(self, event_type: str) -> list:
        return [e for e in self.emitted if e.type == event_type]


class FakeRenderer:
    """Renderer double. ``fail_pages`` maps page number to how many calls fail first."""

    model_name = "fake-image-model"

    def __init__(self):
        self.page_requests = []
        self.character_requests = []
        self.fail_pages: Dict[int, int] = {}
        self.fail_characters: set[str] = set()
        self.attempts: Dict[int, int] = defaultdict(int)

    async def generate_page(self, request):
        self.page_requests.append(request)
        self.attempts[request.page_number] += 1
        attempt = self.attempts[request.page_number]
        remaining = self.fail_pages.get(request.page_number, 0)
        if remaining:
            self.fail_pages[request.page_number] = remaining - 1
            raise ProviderError(f"render failed on attempt {attempt}")
        seed = request.seed if request.seed is not None else 1000 + request.page_number
        return PageRenderResult(
            image_url=f"https://img.test/page_{request.page_number:02d}_{attempt}.png",
            seed=seed,
        )

    async def generate_character(self, request):
        self.character_requests.append(request)
        if request.name in self.fail_characters:
            raise ProviderError(f"character art failed for {request.name}")
        return CharacterRenderResult(image_url=f"https://img.test/characters/{request.asset_filename}")

    async def close(self):
        pass


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_seed_payload() -> Dict:
    """Minimal valid seed with two cast members."""
    return {
        "title": "T",
        "genre_tags": ["x"],
        "tone": "y",
        "setting": "z",
        "cast": [{"name": "A"}, {"name": "B"}],
    }


@pytest.fixture
def sample_seed(sample_seed_payload) -> EpisodeSeed:
    return EpisodeSeed.from_dict(sample_seed_payload)


@pytest.fixture
def event_bus() -> RecordingEventBus:
    return RecordingEventBus()


@pytest.fixture
def repository() -> InMemoryEpisodeRepository:
    return InMemoryEpisodeRepository()


@pytest.fixture
def unavailable_planner():
    """Planner that always reports missing credentials."""
    mock = Mock()
    mock.generate_outline = AsyncMock(
        side_effect=ProviderUnavailableError("Planner unavailable: GEMINI_API_KEY not set")
    )
    return mock


@pytest.fixture
def fake_renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def orchestrator(repository, event_bus, unavailable_planner, fake_renderer) -> GenerationOrchestrator:
    """Orchestrator over in-memory storage with zero backoff and a fixed RNG."""
    return GenerationOrchestrator(
        repository=repository,
        event_bus=event_bus,
        planner=unavailable_planner,
        renderer=fake_renderer,
        storage=None,
        renderer_model="fake-image-model",
        page_backoff_seconds=0,
        regenerate_backoff_seconds=0,
        rng=random.Random(7),
    )
