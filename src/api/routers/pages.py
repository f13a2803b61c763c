"""Page routes for the Mangaloom API: overlays, dialogue, edits and narration."""

import logging

from api.dependencies import get_orchestrator, get_tts_service
from api.schemas import (
    OverlaysRequest,
    OverlaysResponse,
    ReadPageRequest,
    ReadPageResponse,
    RegenerateRequest,
)
from fastapi import APIRouter

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Pages"])


@router.get("/api/pages/{page_id}", summary="Get a page", responses={404: {"description": "Page not found"}})
async def get_page(page_id: str) -> dict:
    page = await get_orchestrator().get_page(page_id)
    return page.to_dict()


@router.get("/api/pages/{page_id}/overlays", summary="Get page overlays", responses={404: {"description": "Page not found"}})
async def get_overlays(page_id: str) -> OverlaysResponse:
    overlays = await get_orchestrator().get_page_overlays(page_id)
    return OverlaysResponse(page_id=page_id, overlays=overlays)


@router.put("/api/pages/{page_id}/overlays", summary="Replace page overlays", description="Stores the client's overlay payload unchanged.", responses={404: {"description": "Page not found"}})
async def put_overlays(page_id: str, request: OverlaysRequest) -> OverlaysResponse:
    page = await get_orchestrator().set_page_overlays(page_id, request.overlays)
    return OverlaysResponse(page_id=page_id, overlays=page.overlays)


@router.get("/api/pages/{page_id}/dialogue", summary="Get page dialogue", responses={404: {"description": "Page not found"}})
async def get_dialogue(page_id: str) -> dict:
    dialogues = await get_orchestrator().get_page_dialogue(page_id)
    return {"dialogues": [d.to_dict() for d in dialogues]}


@router.post("/api/pages/{page_id}/regenerate", summary="Edit a page with a prompt", description="Regenerates the page from its current image and an edit instruction. Waits for the result.", responses={404: {"description": "Page not found"}, 502: {"description": "Renderer failed twice"}, 503: {"description": "Renderer unavailable"}})
async def regenerate_page(page_id: str, request: RegenerateRequest) -> dict:
    """Regenerate a page with an edit prompt.

    Args:
        page_id: Page to edit
        request: Edit prompt and optional style reference URLs

    Returns:
        The updated page.
    """
    page = await get_orchestrator().regenerate_page(
        page_id, request.prompt, request.style_ref_urls
    )
    return {"page": page.to_dict()}


@router.post("/api/pages/{page_id}/retry", summary="Retry a page", description="Re-runs the three-attempt generation for a single page and waits for it.", responses={404: {"description": "Page not found"}, 502: {"description": "Renderer failed three times"}, 503: {"description": "Renderer unavailable"}})
async def retry_page(page_id: str) -> dict:
    page = await get_orchestrator().retry_page(page_id)
    return {"page": page.to_dict()}


@router.post("/api/pages/{page_id}/read", summary="Narrate a page", responses={400: {"description": "Page has no dialogue"}, 404: {"description": "Page not found"}, 503: {"description": "Narration unavailable"}})
async def read_page(page_id: str, request: ReadPageRequest | None = None) -> ReadPageResponse:
    """Synthesize narration audio for a page's dialogue.

    Args:
        page_id: Page to narrate
        request: Optional voice override

    Returns:
        Audio URL and the dialogue that was narrated.
    """
    dialogues = await get_orchestrator().get_page_dialogue(page_id)
    voice_id = request.voice_id if request else None
    audio_url = await get_tts_service().generate_page_audio(dialogues, voice_id=voice_id)
    logger.info(f"Narrated page {page_id}: {audio_url}")
    return ReadPageResponse(audio_url=audio_url, dialogues=[d.to_dict() for d in dialogues])
