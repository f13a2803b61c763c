"""Object storage for generated page art, character sheets and narration.

Provides the ``ObjectStore`` interface the renderer and narration services
upload through, and its Cloudflare R2 implementation (S3-compatible API via
boto3).

Features:
- Upload images and audio with overwrite semantics (same key, new bytes)
- Public URL resolution (CDN base URL or presigned fallback)
- Listing public image URLs under a prefix
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from io import BytesIO
from pathlib import Path
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from services.errors import ProviderError
from utils.config import is_storage_configured, load_config

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp"}

# Presigned URLs are the fallback when no public bucket URL is configured.
# Seven days is the SigV4 maximum.
PRESIGNED_URL_TTL_SECONDS = 7 * 24 * 3600


class ObjectStore(ABC):
    """Durable blob storage with public-URL retrieval.

    Uploads to an existing path overwrite it.
    """

    @abstractmethod
    async def upload_image(self, data: bytes, path: str, content_type: str = "image/png") -> str:
        """Upload image bytes and return a public URL."""

    @abstractmethod
    async def upload_audio(self, data: bytes, path: str, content_type: str = "audio/mpeg") -> str:
        """Upload audio bytes and return a public URL."""

    @abstractmethod
    async def list_public_urls(self, prefix: str) -> list[str]:
        """List public URLs of image objects directly under ``prefix``."""


class R2Storage(ObjectStore):
    """Cloudflare R2 object storage service.

    Uses boto3 with S3-compatible API to interact with Cloudflare R2. boto3 is
    blocking, so every call runs in a worker thread.
    """

    def __init__(
        self,
        account_id: str,
        access_key_id: str,
        secret_access_key: str,
        bucket_name: str = "mangaloom-assets",
        public_url: Optional[str] = None,
        client=None,
    ):
        """Initialize R2 storage.

        Args:
            account_id: Cloudflare account ID
            access_key_id: R2 API access key ID
            secret_access_key: R2 API secret access key
            bucket_name: R2 bucket name
            public_url: Optional public URL base for files (CDN URL)
            client: Pre-built S3 client (tests)
        """
        self.account_id = account_id
        self.bucket_name = bucket_name
        self.public_url = public_url

        # Configure S3 client for R2
        self._client = client or boto3.client(
            "s3",
            endpoint_url=f"https://{account_id}.r2.cloudflarestorage.com",
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            config=Config(
                signature_version="s3v4",
                retries={"max_attempts": 3, "mode": "adaptive"},
            ),
        )

        logger.info(f"R2 storage initialized for bucket: {bucket_name}")

    def public_url_for(self, key: str) -> str:
        """Resolve the public URL for an object key."""
        if self.public_url:
            return f"{self.public_url.rstrip('/')}/{key}"
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self.bucket_name, "Key": key},
            ExpiresIn=PRESIGNED_URL_TTL_SECONDS,
        )

    def _upload_sync(self, data: bytes, key: str, content_type: str) -> str:
        key = key.lstrip("/")
        try:
            self._client.upload_fileobj(
                BytesIO(data),
                self.bucket_name,
                key,
                ExtraArgs={"ContentType": content_type},
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to upload {key}: {e}")
            raise ProviderError(f"Upload failed for {key}: {e}") from e

        logger.info(f"Uploaded {key} to R2 ({len(data)} bytes)")
        return self.public_url_for(key)

    async def upload_image(self, data: bytes, path: str, content_type: str = "image/png") -> str:
        return await asyncio.to_thread(self._upload_sync, data, path, content_type)

    async def upload_audio(self, data: bytes, path: str, content_type: str = "audio/mpeg") -> str:
        return await asyncio.to_thread(self._upload_sync, data, path, content_type)

    def _list_sync(self, prefix: str) -> list[str]:
        folder = prefix.strip("/")
        urls = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            pages = paginator.paginate(
                Bucket=self.bucket_name,
                Prefix=f"{folder}/",
                PaginationConfig={"MaxItems": 1000},
            )
            for page in pages:
                for obj in page.get("Contents", []):
                    key = obj["Key"]
                    if Path(key).suffix.lower() in IMAGE_EXTENSIONS:
                        urls.append(self.public_url_for(key))
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Failed to list {folder}: {e}")
            raise ProviderError(f"List failed for {folder}: {e}") from e
        return urls

    async def list_public_urls(self, prefix: str) -> list[str]:
        return await asyncio.to_thread(self._list_sync, prefix)


# Factory function
_storage_instance: Optional[R2Storage] = None


def get_r2_storage(config: Optional[dict] = None) -> Optional[R2Storage]:
    """Get or create the R2Storage instance.

    Args:
        config: Loaded configuration (``load_config()`` if omitted)

    Returns:
        R2Storage instance or None if not configured
    """
    global _storage_instance

    if _storage_instance is not None:
        return _storage_instance

    config = config or load_config()
    if not is_storage_configured(config):
        logger.info("R2 storage not configured - generated assets will use placeholder URLs")
        return None

    try:
        _storage_instance = R2Storage(
            account_id=config["r2_account_id"],
            access_key_id=config["r2_access_key_id"],
            secret_access_key=config["r2_secret_access_key"],
            bucket_name=config.get("r2_bucket_name") or "mangaloom-assets",
            public_url=config.get("r2_public_url"),
        )
        return _storage_instance
    except Exception as e:
        logger.error(f"Failed to initialize R2 storage: {e}")
        return None
