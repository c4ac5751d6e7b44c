"""Attachment upload to the media host (Cloudinary unsigned uploads)."""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx

from ..messaging.config import SyncConfig, config as default_config
from ..messaging.exceptions import (
    AttachmentError,
    MessageTooLargeError,
    MessageValidationError,
    NetworkError,
    ServiceUnavailableError,
)

logger = logging.getLogger(__name__)

CLOUDINARY_API = "https://api.cloudinary.com/v1_1"


@dataclass(frozen=True)
class Attachment:
    """A file the viewer wants to send along with a message."""
    data: bytes
    filename: str
    content_type: str = "application/octet-stream"

    @property
    def resource_type(self) -> str:
        return "video" if self.content_type.startswith("video") else "image"


class MediaUploader:
    """Uploads attachments and returns their public URLs."""

    def __init__(self, config_override: Optional[SyncConfig] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config_override or default_config
        self._client = client

    def validate_attachment(self, attachment: Attachment) -> None:
        if not attachment.data:
            raise MessageValidationError(f"Attachment {attachment.filename!r} is empty")
        if len(attachment.data) > self.config.max_attachment_bytes:
            raise MessageTooLargeError(
                f"Attachment {attachment.filename!r} is {len(attachment.data)} bytes, "
                f"limit is {self.config.max_attachment_bytes}"
            )

    async def upload_media(self, attachment: Attachment, folder: Optional[str] = None) -> str:
        """
        Upload one attachment.

        Returns:
            str: The secure URL of the uploaded file

        Raises:
            ServiceUnavailableError: If no cloud name is configured
            MessageTooLargeError: If the attachment exceeds the size limit
            AttachmentError: If the media host rejects the file
            NetworkError: On transport failure or timeout
        """
        if not self.config.cloudinary_cloud_name:
            raise ServiceUnavailableError("Media uploads are not configured (CLOUDINARY_CLOUD_NAME)")
        self.validate_attachment(attachment)

        url = f"{CLOUDINARY_API}/{self.config.cloudinary_cloud_name}/{attachment.resource_type}/upload"
        form = {
            "upload_preset": self.config.cloudinary_upload_preset,
            "folder": folder or self.config.media_folder,
        }
        files = {"file": (attachment.filename, attachment.data, attachment.content_type)}

        client = self._client or httpx.AsyncClient(timeout=self.config.request_timeout_seconds)
        try:
            response = await client.post(url, data=form, files=files)
        except httpx.TimeoutException as e:
            raise NetworkError(f"Upload of {attachment.filename!r} timed out") from e
        except httpx.TransportError as e:
            raise NetworkError(f"Upload of {attachment.filename!r} failed: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()

        if response.status_code >= 500:
            raise NetworkError(f"Media host unavailable ({response.status_code})")
        if response.status_code >= 400:
            raise AttachmentError(f"Media host rejected {attachment.filename!r}: {response.text[:200]}")

        secure_url = response.json().get("secure_url")
        if not secure_url:
            raise AttachmentError(f"Media host returned no URL for {attachment.filename!r}")
        logger.info("Uploaded %s (%d bytes)", attachment.filename, len(attachment.data))
        return secure_url
