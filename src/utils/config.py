"""Configuration loading and validation for mangaloom."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from rich.logging import RichHandler

from utils.logging import NOISY_LOGGERS

# Get the project root directory (parent of src)
PROJECT_ROOT = Path(__file__).parent.parent.parent

# Load environment variables from .env file in project root
load_dotenv(PROJECT_ROOT / ".env")

DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://localhost:5173"


def load_config() -> dict:
    """Load configuration from environment variables."""

    # Helper function to resolve paths relative to project root
    def resolve_path(path: str | None) -> str | None:
        if not path:
            return None
        if path == ":memory:" or Path(path).is_absolute():
            return path
        return str(PROJECT_ROOT / path)

    config = {
        # Gemini (planner + renderer)
        "gemini_api_key": os.getenv("GEMINI_API_KEY"),
        "planner_model": os.getenv("PLANNER_MODEL", "gemini-2.5-flash"),
        "renderer_image_model": os.getenv(
            "RENDERER_IMAGE_MODEL", "gemini-2.5-flash-image-preview"
        ),
        # ElevenLabs narration
        "elevenlabs_api_key": os.getenv("ELEVENLABS_API_KEY"),
        "elevenlabs_default_voice_id": os.getenv(
            "ELEVENLABS_DEFAULT_VOICE_ID", "pNInz6obpgDQGcFmaJgB"
        ),
        "elevenlabs_model": os.getenv("ELEVENLABS_MODEL", "eleven_flash_v2_5"),
        # Cloudflare R2 object storage (disabled unless all credentials are set)
        "r2_account_id": os.getenv("R2_ACCOUNT_ID"),
        "r2_access_key_id": os.getenv("R2_ACCESS_KEY_ID"),
        "r2_secret_access_key": os.getenv("R2_SECRET_ACCESS_KEY"),
        "r2_bucket_name": os.getenv("R2_BUCKET_NAME", "mangaloom-assets"),
        "r2_public_url": os.getenv("R2_PUBLIC_URL"),
        # Durable episode storage; unset means in-memory
        "database_path": resolve_path(os.getenv("DATABASE_PATH")),
        # Event channel eviction
        "event_channel_ttl_seconds": float(os.getenv("EVENT_CHANNEL_TTL_SECONDS", "900")),
        "event_sweep_interval_seconds": float(os.getenv("EVENT_SWEEP_INTERVAL_SECONDS", "60")),
        # Backoff between render attempts (multiplied by attempt number)
        "page_backoff_seconds": float(os.getenv("PAGE_BACKOFF_SECONDS", "0.3")),
        "regenerate_backoff_seconds": float(os.getenv("REGENERATE_BACKOFF_SECONDS", "0.4")),
        # Logging
        "log_level": os.getenv("LOG_LEVEL", "INFO"),
        "log_json": os.getenv("LOG_JSON", "false").lower() == "true",
        # API
        "cors_origins": [
            origin.strip()
            for origin in os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")
            if origin.strip()
        ],
    }

    return config


def is_storage_configured(config: dict) -> bool:
    """Check whether all R2 credentials are present."""
    return all(
        config.get(key)
        for key in ("r2_account_id", "r2_access_key_id", "r2_secret_access_key")
    )


def validate_config(config: dict) -> list[str]:
    """Validate configuration and return list of problems.

    Nothing here is fatal: the planner falls back to a stub outline and the
    renderer to placeholder URLs, so problems are reported, not raised.
    """
    errors = []

    if not config.get("gemini_api_key"):
        errors.append("GEMINI_API_KEY is not set: planning uses the stub outline and rendering fails")

    r2_keys = ("r2_account_id", "r2_access_key_id", "r2_secret_access_key")
    present = [key for key in r2_keys if config.get(key)]
    if present and len(present) != len(r2_keys):
        missing = [key.upper() for key in r2_keys if key not in present]
        errors.append(f"Partial R2 configuration, storage disabled. Missing: {', '.join(missing)}")

    if config.get("event_channel_ttl_seconds", 0) <= 0:
        errors.append("EVENT_CHANNEL_TTL_SECONDS must be positive")
    if config.get("event_sweep_interval_seconds", 0) <= 0:
        errors.append("EVENT_SWEEP_INTERVAL_SECONDS must be positive")

    database_path = config.get("database_path")
    if database_path and database_path != ":memory:":
        try:
            Path(database_path).parent.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            errors.append(f"Cannot create database directory: {e}")

    return errors


def setup_logging(log_level: str = "INFO") -> None:
    """Set up console logging with Rich for the command-line interface."""
    # Clear any existing handlers
    logging.root.handlers.clear()

    rich_handler = RichHandler(
        show_time=True,
        show_level=True,
        show_path=False,
        rich_tracebacks=True,
        markup=False,  # Disable markup to avoid conflicts
    )

    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        handlers=[rich_handler],
        format="%(message)s",
    )

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)
