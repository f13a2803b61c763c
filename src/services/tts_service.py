"""TTS Service - page narration via the ElevenLabs text-to-speech API."""

import logging
import secrets
import time
from typing import Any, Optional

import httpx

from models.episode import DialogueType, PanelDialogue
from services.errors import NoContentError, ProviderError, ProviderUnavailableError
from services.r2_storage import ObjectStore

logger = logging.getLogger(__name__)

ELEVENLABS_API_BASE = "https://api.elevenlabs.io/v1"

DEFAULT_VOICE_ID = "pNInz6obpgDQGcFmaJgB"
DEFAULT_MODEL = "eleven_flash_v2_5"

VOICE_SETTINGS = {
    "stability": 0.4,
    "similarity_boost": 0.6,
    "style": 0.2,
    "use_speaker_boost": True,
}


class TTSServiceError(ProviderError):
    """Error from the TTS provider."""

    pass


def format_dialogue_line(dialogue: PanelDialogue) -> str:
    """Turn one panel entry into a narration sentence.

    Dialogue is prefixed with the speaker, thoughts are framed as
    "<speaker> thinks:", narration ends with an ellipsis pause and sound
    effects are announced.
    """
    text = dialogue.text.strip()
    if dialogue.type == DialogueType.NARRATION:
        return text if text.endswith("...") else f"{text.rstrip('.')}..."
    if dialogue.type == DialogueType.SOUND_EFFECT:
        return f"Sound effect: {text}"
    if dialogue.type == DialogueType.THOUGHT:
        speaker = dialogue.character or "Someone"
        return f"{speaker} thinks: {text}"
    if dialogue.character:
        return f"{dialogue.character} says: {text}"
    return text


def build_narration_script(dialogues: list[PanelDialogue]) -> str:
    """Join non-blank dialogue into one script in panel order.

    Entries are stably sorted by panel number so lines within a panel keep
    their original order.

    Raises:
        NoContentError: If nothing is left after dropping blank entries
    """
    lines = [d for d in dialogues if d.text and d.text.strip()]
    if not lines:
        raise NoContentError("No dialogue to narrate")

    sentences = []
    for dialogue in sorted(lines, key=lambda d: d.panel_number):
        sentence = format_dialogue_line(dialogue)
        if sentence[-1] not in ".!?…":
            sentence += "."
        sentences.append(sentence)
    return " ".join(sentences)


class TTSService:
    """HTTP client for ElevenLabs narration, uploading audio to object storage."""

    def __init__(
        self,
        api_key: Optional[str],
        storage: Optional[ObjectStore] = None,
        default_voice_id: str = DEFAULT_VOICE_ID,
        default_model: str = DEFAULT_MODEL,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize TTS service.

        Args:
            api_key: ElevenLabs API key
            storage: Object store for generated audio
            default_voice_id: Voice used when the caller does not pick one
            default_model: ElevenLabs model id
            client: HTTP client (tests)
        """
        self.api_key = api_key
        self.storage = storage
        self.default_voice_id = default_voice_id
        self.default_model = default_model
        # Long timeout for TTS generation (can take a while for long pages)
        self.client = client or httpx.AsyncClient(timeout=120.0)

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self, accept: str = "application/json") -> dict:
        if not self.is_configured():
            raise ProviderUnavailableError("ElevenLabs API key not configured")
        return {"xi-api-key": self.api_key, "Accept": accept}

    async def _get_json(self, path: str, what: str) -> Any:
        headers = self._headers()
        try:
            response = await self.client.get(f"{ELEVENLABS_API_BASE}{path}", headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise TTSServiceError(f"Failed to fetch {what}: {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise ProviderUnavailableError(f"Failed to fetch {what}: {e}") from e

    async def generate_speech(
        self,
        text: str,
        voice_id: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> str:
        """Synthesize ``text`` and upload the MP3.

        Returns:
            Public URL of the uploaded audio

        Raises:
            ProviderUnavailableError: If the key or storage is missing, or ElevenLabs is unreachable
            TTSServiceError: If ElevenLabs rejects the request
        """
        headers = self._headers(accept="audio/mpeg")
        if self.storage is None:
            raise ProviderUnavailableError("Object storage not configured for narration audio")

        voice_id = voice_id or self.default_voice_id
        payload = {
            "text": text,
            "model_id": model_id or self.default_model,
            "voice_settings": VOICE_SETTINGS,
        }

        logger.info(f"Generating narration ({len(text)} chars) with voice {voice_id}")
        try:
            response = await self.client.post(
                f"{ELEVENLABS_API_BASE}/text-to-speech/{voice_id}",
                headers=headers,
                json=payload,
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TTSServiceError(
                f"ElevenLabs API error: {e.response.status_code} {e.response.text}"
            ) from e
        except httpx.RequestError as e:
            raise ProviderUnavailableError(f"ElevenLabs unreachable: {e}") from e

        path = f"tts/{int(time.time() * 1000)}_{secrets.token_hex(4)}.mp3"
        return await self.storage.upload_audio(response.content, path, "audio/mpeg")

    async def generate_page_audio(
        self,
        dialogues: list[PanelDialogue],
        voice_id: Optional[str] = None,
    ) -> str:
        """Narrate a page's dialogue.

        Raises:
            NoContentError: If every dialogue entry is blank (the provider is not called)
        """
        script = build_narration_script(dialogues)
        return await self.generate_speech(script, voice_id=voice_id)

    async def get_voices(self) -> list[dict]:
        data = await self._get_json("/voices", "voices")
        return data.get("voices", []) if isinstance(data, dict) else []

    async def get_models(self) -> list[dict]:
        data = await self._get_json("/models", "models")
        return data if isinstance(data, list) else []

    async def get_usage(self) -> dict:
        """Subscription usage reduced to character quota and feature flags."""
        data = await self._get_json("/user", "usage")
        subscription = (data or {}).get("subscription") or {}
        return {
            "character_count": subscription.get("character_count", 0),
            "character_limit": subscription.get("character_limit", 0),
            "can_use_instant_voice_cloning": subscription.get("can_use_instant_voice_cloning", False),
            "available_models": subscription.get("available_models", []),
        }

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()
