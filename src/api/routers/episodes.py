"""Episode routes for the Mangaloom API: planning, generation and live progress."""

import asyncio
import json
import logging

from api.dependencies import get_event_bus, get_orchestrator
from api.schemas import (
    EpisodeSeedRequest,
    GenerationStartedResponse,
    PlanResponse,
    StyleRefsResponse,
    StyleRefUploadResponse,
)
from fastapi import APIRouter, File, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from models.events import event_to_dict
from services.errors import NotFoundError
from services.orchestrator import validate_seed_payload

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Episodes"])


async def build_snapshot(episode_id: str) -> dict:
    """Current page state of an episode, sent to late subscribers before live events.

    Raises:
        NotFoundError: If the episode does not exist
    """
    episode = await get_orchestrator().get_episode(episode_id)
    return {
        "type": "episode_snapshot",
        "episode_id": episode.id,
        "pages": [
            {
                "page": page.page_number,
                "status": page.status.value,
                "image_url": page.image_url,
                "seed": page.seed,
                "version": page.version,
                "error": page.error,
            }
            for page in episode.pages
        ],
    }


@router.post("/api/episodes", summary="Plan a new episode", description="Generate a ten-page outline from a seed. Falls back to a template outline when the planner is unavailable.", responses={400: {"description": "Missing required seed fields"}})
async def create_episode(request: EpisodeSeedRequest) -> PlanResponse:
    """Plan an episode from a seed.

    Args:
        request: The episode seed.

    Returns:
        New episode id and its outline.
    """
    seed = validate_seed_payload(request.model_dump(exclude_none=True))
    result = await get_orchestrator().plan_episode(seed)
    return PlanResponse(**result.to_dict())


@router.get("/api/episodes/{episode_id}", summary="Get an episode", responses={404: {"description": "Episode not found"}})
async def get_episode(episode_id: str) -> dict:
    """Episode with seed, outline, pages (ordered) and characters."""
    episode = await get_orchestrator().get_episode(episode_id)
    return episode.to_dict()


@router.post("/api/episodes/{episode_id}/generate", summary="Start page generation", description="Schedules generation of all ten pages and returns immediately. Progress and failures are reported on the event stream only.")
async def start_generation(episode_id: str) -> GenerationStartedResponse:
    """Start generating pages 1-10 in the background.

    Args:
        episode_id: Episode to generate

    Returns:
        Always ``{"started": true}``.
    """
    get_orchestrator().launch_generation(episode_id)
    return GenerationStartedResponse(started=True)


@router.get("/api/episodes/{episode_id}/characters", summary="List episode characters", responses={404: {"description": "Episode not found"}})
async def list_characters(episode_id: str) -> dict:
    episode = await get_orchestrator().get_episode(episode_id)
    return {"characters": [c.to_dict() for c in episode.characters]}


@router.get("/api/episodes/{episode_id}/style-refs", summary="List style references", responses={404: {"description": "Episode not found"}})
async def list_style_refs(episode_id: str) -> StyleRefsResponse:
    refs = await get_orchestrator().list_style_refs(episode_id)
    return StyleRefsResponse(refs=refs)


@router.post("/api/episodes/{episode_id}/style-refs", summary="Upload a style reference", responses={400: {"description": "Empty upload"}, 404: {"description": "Episode not found"}})
async def upload_style_ref(episode_id: str, file: UploadFile = File(...)) -> StyleRefUploadResponse:
    """Store an image that biases the visual style of later pages.

    Args:
        episode_id: Episode the reference belongs to
        file: Image upload (png, jpg, jpeg or webp)

    Returns:
        Public URL of the stored reference.
    """
    data = await file.read()
    url = await get_orchestrator().upload_style_ref(
        episode_id,
        data,
        filename=file.filename,
        content_type=file.content_type,
    )
    return StyleRefUploadResponse(url=url)


@router.get("/api/episodes/{episode_id}/stream", summary="Episode event stream", description="Server-sent events for planning and page progress. Pass snapshot=true to receive the current page state first.", responses={404: {"description": "Episode not found (snapshot only)"}})
async def stream_episode_events(episode_id: str, snapshot: bool = False) -> StreamingResponse:
    """Stream episode events as SSE.

    Only events emitted after the connection opens are delivered.
    """
    bus = get_event_bus()
    subscription = bus.subscribe(episode_id)
    try:
        snapshot_message = await build_snapshot(episode_id) if snapshot else None
    except NotFoundError:
        subscription.close()
        raise

    async def event_stream():
        try:
            yield ":ok\n\n"
            if snapshot_message is not None:
                yield f"data: {json.dumps(snapshot_message)}\n\n"
            async for event in subscription:
                yield f"data: {json.dumps(event_to_dict(event))}\n\n"
        finally:
            subscription.close()
            logger.debug(f"SSE client left episode {episode_id}")

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.websocket("/ws/episodes/{episode_id}")
async def websocket_episode(websocket: WebSocket, episode_id: str, snapshot: bool = False) -> None:
    """WebSocket mirror of the episode event stream.

    Args:
        websocket: WebSocket connection
        episode_id: Episode to monitor
        snapshot: Send the current page state before live events
    """
    await websocket.accept()
    subscription = get_event_bus().subscribe(episode_id)

    if snapshot:
        try:
            await websocket.send_json(await build_snapshot(episode_id))
        except NotFoundError:
            await websocket.send_json({"type": "error", "message": "Episode not found"})
            await websocket.close()
            subscription.close()
            return

    async def forward_events() -> None:
        async for event in subscription:
            await websocket.send_json(event_to_dict(event))

    sender = asyncio.create_task(forward_events())

    try:
        # Keep connection alive
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
    except WebSocketDisconnect:
        logger.debug(f"WebSocket client left episode {episode_id}")
    finally:
        sender.cancel()
        subscription.close()
