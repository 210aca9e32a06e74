"""Base protocol for attachment storage backends."""

from typing import Any, Dict, Optional


class AttachmentBackendBase:
    """Interface implemented by concrete attachment backends."""

    storage_type: str = ""

    async def upload(self, key: str, content: bytes, *, content_type: str, metadata: Dict[str, str]) -> Dict[str, Any]:
        """Store ``content`` under ``key`` and return the storage metadata."""
        raise NotImplementedError

    async def download(self, meta: Dict[str, Any]) -> bytes:
        """Return the attachment payload described by ``meta``."""
        raise NotImplementedError

    async def presigned_url(self, meta: Dict[str, Any], expires_in: int) -> Optional[str]:
        """Return a time limited download URL, or ``None`` when unsupported."""
        return None

    async def delete(self, meta: Dict[str, Any]) -> None:
        """Remove the stored object; a no-op for backends without remote state."""
        return None
