"""
Storage utilities.

Supabase Storage uploads for generated media.
"""

import asyncio
import mimetypes
from typing import Any, Callable, Optional

from supabase import create_client

from shared.config import Settings
from shared.errors import ConfigError, RetryableError, ValidationError
from shared.logging import get_logger
from shared.retry import retry_with_backoff

logger = get_logger("storage")

MAX_UPLOAD_BYTES = 200 * 1024 * 1024  # 200MB


class StorageClient:
    """Supabase Storage client for generated media."""

    def __init__(self, url: str, service_key: str, bucket: str, max_upload_bytes: int = MAX_UPLOAD_BYTES):
        """
        Initialize storage client.

        Args:
            url: Supabase project URL
            service_key: Service role key
            bucket: Bucket every upload lands in
            max_upload_bytes: Reject uploads larger than this
        """
        try:
            self.client = create_client(url, service_key)
            self.storage = self.client.storage
        except Exception as e:
            raise ConfigError(f"Failed to initialize storage client: {str(e)}") from e
        self.bucket = bucket
        self.max_upload_bytes = max_upload_bytes

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["StorageClient"]:
        """Build a client when Supabase is configured, else None."""
        if not settings.supabase_url or not settings.supabase_service_key:
            return None
        return cls(settings.supabase_url, settings.supabase_service_key, settings.storage_bucket)

    async def _execute_sync(self, func: Callable[[], Any]) -> Any:
        """Run a synchronous Supabase call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)

    @staticmethod
    def detect_content_type(key: str, default: str = "application/octet-stream") -> str:
        content_type, _ = mimetypes.guess_type(key)
        return content_type or default

    @retry_with_backoff(max_attempts=3, base_delay=2)
    async def upload_file_with_retry(self, key: str, data: bytes, mime_type: Optional[str] = None) -> str:
        """
        Upload bytes under `key` and return a public URL.

        Raises:
            ValidationError: If the payload is empty or too large
            RetryableError: If the upload still fails after retries
        """
        if not data:
            raise ValidationError(f"Refusing to upload empty file to {key}")
        if len(data) > self.max_upload_bytes:
            raise ValidationError(
                f"File size ({len(data) / (1024 * 1024):.2f} MB) exceeds maximum of "
                f"{self.max_upload_bytes / (1024 * 1024):.2f} MB"
            )
        content_type = mime_type or self.detect_content_type(key)

        def _upload():
            return self.storage.from_(self.bucket).upload(
                path=key,
                file=data,
                file_options={"content-type": content_type, "upsert": "true"}
            )

        try:
            await self._execute_sync(_upload)
            url = await self._execute_sync(lambda: self.storage.from_(self.bucket).get_public_url(key))
        except Exception as e:
            logger.error(
                f"Failed to upload file to {self.bucket}/{key}: {str(e)}",
                extra={"bucket": self.bucket, "key": key, "error": str(e)}
            )
            raise RetryableError(f"Failed to upload file: {str(e)}") from e

        logger.info(
            f"Uploaded file to {self.bucket}/{key}",
            extra={"bucket": self.bucket, "key": key, "size": len(data)}
        )
        return url
