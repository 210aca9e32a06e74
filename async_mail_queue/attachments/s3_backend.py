"""S3 compatible object storage backend (AWS S3, Cloudflare R2, MinIO)."""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

from ..logger import get_logger
from ..models import AttachmentStorageError
from .base import AttachmentBackendBase

logger = get_logger("AttachmentStorage")


class S3AttachmentBackend(AttachmentBackendBase):
    storage_type = "s3"

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: Optional[str] = None,
        region_name: Optional[str] = None,
        session: Optional[aioboto3.Session] = None,
    ):
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.region_name = region_name
        self._session = session or aioboto3.Session()

    def _client(self):
        return self._session.client("s3", endpoint_url=self.endpoint_url, region_name=self.region_name)

    async def upload(self, key: str, content: bytes, *, content_type: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        try:
            async with self._client() as s3:
                await s3.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=content,
                    ContentType=content_type,
                    Metadata=metadata,
                )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to upload attachment %s: %s", key, exc)
            raise AttachmentStorageError("Failed to upload attachment") from exc
        logger.info("Uploaded attachment %s (%d bytes)", key, len(content))
        return {
            "storage_type": self.storage_type,
            "bucket": self.bucket,
            "key": key,
            "size": len(content),
            "uploaded_at": datetime.now(timezone.utc).isoformat(),
        }

    async def download(self, meta: Dict[str, Any]) -> bytes:
        try:
            async with self._client() as s3:
                resp = await s3.get_object(Bucket=meta["bucket"], Key=meta["key"])
                return await resp["Body"].read()
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to download attachment %s: %s", meta.get("key"), exc)
            raise AttachmentStorageError("Failed to download attachment") from exc

    async def presigned_url(self, meta: Dict[str, Any], expires_in: int) -> Optional[str]:
        async with self._client() as s3:
            return await s3.generate_presigned_url(
                "get_object",
                Params={
                    "Bucket": meta["bucket"],
                    "Key": meta["key"],
                    "ResponseContentDisposition": "inline",
                },
                ExpiresIn=int(expires_in),
            )

    async def delete(self, meta: Dict[str, Any]) -> None:
        try:
            async with self._client() as s3:
                await s3.delete_object(Bucket=meta["bucket"], Key=meta["key"])
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to delete attachment %s: %s", meta.get("key"), exc)
            raise AttachmentStorageError("Failed to delete attachment") from exc
        logger.info("Deleted attachment %s", meta["key"])
