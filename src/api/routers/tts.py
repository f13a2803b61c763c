"""TTS (Text-to-Speech) catalogue routes for the Mangaloom API."""

from api.dependencies import get_tts_service
from fastapi import APIRouter

router = APIRouter(tags=["Text-to-Speech"])


@router.get("/api/tts/voices", summary="List narration voices", responses={503: {"description": "ElevenLabs not configured"}})
async def list_voices() -> dict:
    return {"voices": await get_tts_service().get_voices()}


@router.get("/api/tts/models", summary="List narration models", responses={503: {"description": "ElevenLabs not configured"}})
async def list_models() -> dict:
    return {"models": await get_tts_service().get_models()}


@router.get("/api/tts/usage", summary="Get narration quota", responses={503: {"description": "ElevenLabs not configured"}})
async def get_usage() -> dict:
    """Character quota and feature flags of the ElevenLabs subscription."""
    return await get_tts_service().get_usage()
