"""Attachment storage for queued mail."""

import mimetypes
import os
from typing import Any, Dict, List, Optional, Tuple

from ..models import AttachmentStorageError
from .base import AttachmentBackendBase
from .inline_backend import InlineAttachmentBackend
from .s3_backend import S3AttachmentBackend


class AttachmentStorage:
    """Upload, read, presign and delete attachments kept in object storage.

    Stored attachments are addressed by the metadata dictionary returned from
    :meth:`upload_attachment`; the queue carries that metadata opaquely in the
    job ``attachments`` field.
    """

    def __init__(self, s3: Optional[S3AttachmentBackend] = None):
        """Initialize with the S3 backend used for new uploads.

        Args:
            s3: Configured S3 backend. Without it only legacy inline
                attachments can be read.
        """
        self._s3 = s3
        self._inline = InlineAttachmentBackend()

    def _backend_for(self, meta: Dict[str, Any]) -> AttachmentBackendBase:
        if not isinstance(meta, dict):
            raise AttachmentStorageError("Invalid storage metadata")
        if meta.get("storage_type") == "s3" and meta.get("bucket") and meta.get("key"):
            if self._s3 is None:
                raise AttachmentStorageError("S3 storage is not configured")
            return self._s3
        if isinstance(meta.get("data"), str):
            return self._inline
        raise AttachmentStorageError("Invalid storage metadata")

    @staticmethod
    def generate_key(owner: str, message_id: str, attachment_id: str, filename: Optional[str]) -> str:
        """Build the object key, keeping only the extension of the client filename."""
        _, ext = os.path.splitext(filename or "")
        return f"email-attachments/owner_{owner}/message_{message_id}/{attachment_id}{ext}"

    async def upload_attachment(
        self,
        owner: str,
        message_id: str,
        attachment_id: str,
        content: bytes,
        *,
        filename: Optional[str] = None,
        content_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Upload an attachment and return its storage metadata."""
        if self._s3 is None:
            raise AttachmentStorageError("S3 storage is not configured")
        key = self.generate_key(owner, message_id, attachment_id, filename)
        meta = await self._s3.upload(
            key,
            content,
            content_type=content_type or "application/octet-stream",
            metadata={
                "owner": str(owner),
                "message-id": str(message_id),
                "attachment-id": str(attachment_id),
                "original-filename": filename or "attachment",
            },
        )
        meta["filename"] = filename or "attachment"
        meta["content_type"] = content_type or "application/octet-stream"
        return meta

    async def download_attachment(self, meta: Dict[str, Any]) -> bytes:
        """Return the attachment content for S3 or legacy inline metadata."""
        return await self._backend_for(meta).download(meta)

    async def generate_presigned_url(self, meta: Dict[str, Any], expires_in: int = 3600) -> str:
        """Return a direct download URL; only S3 attachments support it."""
        url = await self._backend_for(meta).presigned_url(meta, expires_in)
        if not url:
            raise AttachmentStorageError("Presigned URLs only available for S3 storage")
        return url

    async def delete_attachment(self, meta: Dict[str, Any]) -> None:
        """Delete the stored object; legacy inline attachments have nothing to delete."""
        try:
            backend = self._backend_for(meta)
        except AttachmentStorageError:
            return
        await backend.delete(meta)

    async def load_all(self, attachments: Optional[List[Dict[str, Any]]]) -> List[Tuple[Dict[str, Any], bytes]]:
        """Download every attachment of a job, preserving order."""
        loaded: List[Tuple[Dict[str, Any], bytes]] = []
        for meta in attachments or []:
            loaded.append((meta, await self.download_attachment(meta)))
        return loaded

    @staticmethod
    def guess_mime(filename: str) -> Tuple[str, str]:
        """Guess the MIME type for the given filename."""
        mt, _ = mimetypes.guess_type(filename)
        if not mt:
            return ("application", "octet-stream")
        return tuple(mt.split("/", 1))  # type: ignore[return-value]


__all__ = ["AttachmentStorage", "S3AttachmentBackend", "InlineAttachmentBackend"]
