"""Handle legacy attachments embedded in the metadata as base64 strings."""

import base64
import binascii
from typing import Any, Dict

from .base import AttachmentBackendBase


class InlineAttachmentBackend(AttachmentBackendBase):
    storage_type = "inline"

    async def download(self, meta: Dict[str, Any]) -> bytes:
        """Decode the ``data`` field, falling back to the raw text when it is not base64."""
        data = meta.get("data") or ""
        if meta.get("encoding") == "base64":
            try:
                return base64.b64decode(data, validate=True)
            except (binascii.Error, ValueError):
                pass
        return data.encode("utf-8") if isinstance(data, str) else bytes(data)
