"""S3-compatible object store client (Cloudflare R2) built on boto3.

boto3 is synchronous, so every call is pushed to a worker thread.
"""

import asyncio
from typing import Optional, Protocol

import boto3
import structlog
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from retouch.services.exceptions import ConfigurationError, StorageError

logger = structlog.get_logger(__name__)

IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"

EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
}


class ObjectStore(Protocol):
    """Binary blob storage used by the worker."""

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        cache_control: Optional[str] = None,
    ) -> None: ...

    async def get(self, key: str) -> bytes: ...

    def public_url(self, key: str) -> str: ...

    async def signed_url(self, key: str, expires_in: int = 3600) -> str: ...

    async def copy_to(self, key: str, target_bucket: str) -> None: ...


def extension_for(mime_type: str) -> str:
    return EXTENSIONS.get(mime_type.split(";")[0].strip().lower(), "png")


def build_output_key(session_id: str, photo_id: str, timestamp_ms: int, mime_type: str = "image/png") -> str:
    """Storage key for a generated image.

    Examples:
        >>> build_output_key("s1", "p1", 1700000000000)
        'private/s1/output/p1_1700000000000.png'
    """
    return f"private/{session_id}/output/{photo_id}_{timestamp_ms}.{extension_for(mime_type)}"


def build_public_url(public_base_url: str, key: str) -> str:
    """Join the public base and a key.

    Raises:
        ConfigurationError: If no public base URL is configured
    """
    if not public_base_url:
        raise ConfigurationError("PUBLIC_BASE_URL not configured")
    return f"{public_base_url.rstrip('/')}/{key.lstrip('/')}"


class R2ObjectStore:
    """Object store backed by an R2 (or any S3-compatible) bucket."""

    def __init__(self, s3_client, bucket: str, public_base_url: str = ""):
        self.s3_client = s3_client
        self.bucket = bucket
        self.public_base_url = public_base_url

    @classmethod
    def from_credentials(
        cls,
        *,
        account_id: str,
        access_key_id: str,
        secret_access_key: str,
        bucket: str,
        endpoint_url: str = "",
        public_base_url: str = "",
        timeout: float = 60.0,
    ) -> "R2ObjectStore":
        """Build a store from R2 credentials; the endpoint defaults to the account's R2 host."""
        endpoint = endpoint_url or (f"https://{account_id}.r2.cloudflarestorage.com" if account_id else "")
        if not endpoint or not access_key_id or not secret_access_key or not bucket:
            raise ConfigurationError("R2 storage credentials not configured")

        s3_client = boto3.client(
            "s3",
            endpoint_url=endpoint,
            aws_access_key_id=access_key_id,
            aws_secret_access_key=secret_access_key,
            region_name="auto",
            config=Config(
                connect_timeout=timeout,
                read_timeout=timeout,
                retries={"max_attempts": 2},
            ),
        )
        return cls(s3_client, bucket, public_base_url)

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        cache_control: Optional[str] = None,
    ) -> None:
        params = {"Bucket": self.bucket, "Key": key, "Body": data, "ContentType": content_type}
        if cache_control:
            params["CacheControl"] = cache_control
        try:
            await asyncio.to_thread(self.s3_client.put_object, **params)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Upload failed for {key}: {e}") from e
        logger.info("storage.uploaded", key=key, size_bytes=len(data), content_type=content_type)

    async def get(self, key: str) -> bytes:
        def _read() -> bytes:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()

        try:
            return await asyncio.to_thread(_read)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Download failed for {key}: {e}") from e

    def public_url(self, key: str) -> str:
        return build_public_url(self.public_base_url, key)

    async def signed_url(self, key: str, expires_in: int = 3600) -> str:
        try:
            return await asyncio.to_thread(
                self.s3_client.generate_presigned_url,
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Could not sign URL for {key}: {e}") from e

    async def copy_to(self, key: str, target_bucket: str) -> None:
        """Server-side copy of ``key`` into another bucket under the same key."""
        try:
            await asyncio.to_thread(
                self.s3_client.copy_object,
                Bucket=target_bucket,
                Key=key,
                CopySource={"Bucket": self.bucket, "Key": key},
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Copy of {key} to {target_bucket} failed: {e}") from e
