"""Service singletons and dependency injection for the Mangaloom API."""

from services.episode_repository import EpisodeRepository, create_repository
from services.event_bus import EventBus
from services.orchestrator import GenerationOrchestrator
from services.planner_service import PlannerService
from services.r2_storage import get_r2_storage
from services.renderer_service import RendererService
from services.tts_service import TTSService
from utils.config import load_config

# Service singletons
_event_bus: EventBus | None = None
_repository: EpisodeRepository | None = None
_planner_service: PlannerService | None = None
_renderer_service: RendererService | None = None
_tts_service: TTSService | None = None
_orchestrator: GenerationOrchestrator | None = None


def get_event_bus() -> EventBus:
    """Get or create the process-wide event bus."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def get_repository() -> EpisodeRepository:
    """Get or create the episode repository (chosen once from DATABASE_PATH).

    The server lifespan calls ``connect()`` on it before serving requests.
    """
    global _repository
    if _repository is None:
        _repository = create_repository(load_config())
    return _repository


def get_planner_service() -> PlannerService:
    """Get or create the planner service instance."""
    global _planner_service
    if _planner_service is None:
        config = load_config()
        _planner_service = PlannerService(
            api_key=config.get("gemini_api_key"),
            model_name=config.get("planner_model", "gemini-2.5-flash"),
        )
    return _planner_service


def get_renderer_service() -> RendererService:
    """Get or create the renderer service instance."""
    global _renderer_service
    if _renderer_service is None:
        config = load_config()
        _renderer_service = RendererService(
            api_key=config.get("gemini_api_key"),
            model_name=config.get("renderer_image_model", "gemini-2.5-flash-image-preview"),
            storage=get_r2_storage(config),
        )
    return _renderer_service


def get_tts_service() -> TTSService:
    """Get or create the TTS service instance."""
    global _tts_service
    if _tts_service is None:
        config = load_config()
        _tts_service = TTSService(
            api_key=config.get("elevenlabs_api_key"),
            storage=get_r2_storage(config),
            default_voice_id=config["elevenlabs_default_voice_id"],
            default_model=config["elevenlabs_model"],
        )
    return _tts_service


def get_orchestrator() -> GenerationOrchestrator:
    """Get or create the generation orchestrator."""
    global _orchestrator
    if _orchestrator is None:
        config = load_config()
        renderer = get_renderer_service()
        _orchestrator = GenerationOrchestrator(
            repository=get_repository(),
            event_bus=get_event_bus(),
            planner=get_planner_service(),
            renderer=renderer,
            storage=get_r2_storage(config),
            renderer_model=renderer.model_name,
            page_backoff_seconds=config["page_backoff_seconds"],
            regenerate_backoff_seconds=config["regenerate_backoff_seconds"],
        )
    return _orchestrator


async def close_services() -> None:
    """Close provider clients and the repository, then forget the singletons."""
    global _event_bus, _repository, _planner_service, _renderer_service, _tts_service, _orchestrator
    if _orchestrator is not None:
        await _orchestrator.cancel_background_tasks()
    if _renderer_service is not None:
        await _renderer_service.close()
    if _tts_service is not None:
        await _tts_service.close()
    if _repository is not None:
        await _repository.close()
    _event_bus = _repository = _planner_service = None
    _renderer_service = _tts_service = _orchestrator = None
