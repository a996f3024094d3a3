from __future__ import annotations

import logging
import re
import uuid
from pathlib import Path
from typing import Protocol

from config import settings

logger = logging.getLogger(__name__)

MAX_IMAGE_SIZE = 4 * 1024 * 1024  # 4MB
ALLOWED_IMAGE_MIME_TYPES = {
    "image/jpeg",
    "image/png",
    "image/webp",
    "image/gif",
}
PROFILE_PICTURE_FOLDER = "profile-pictures"

_FOLDER_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")
_MAGIC_SIGNATURES: list[tuple[bytes, str, str]] = [
    (b"\xff\xd8\xff", "image/jpeg", ".jpg"),
    (b"\x89PNG\r\n\x1a\n", "image/png", ".png"),
    (b"GIF87a", "image/gif", ".gif"),
    (b"GIF89a", "image/gif", ".gif"),
]


def sniff_image_format(image_bytes: bytes) -> tuple[str, str] | None:
    head = image_bytes[:16]
    for magic, mime, ext in _MAGIC_SIGNATURES:
        if head.startswith(magic):
            return mime, ext
    if len(head) >= 12 and head.startswith(b"RIFF") and head[8:12] == b"WEBP":
        return "image/webp", ".webp"
    return None


def validate_image_payload(image_bytes: bytes, *, content_type: str | None = None) -> tuple[str, str]:
    """Return ``(mime, extension)`` for an acceptable profile image or raise ``ValueError``."""
    if not image_bytes:
        raise ValueError("Image is empty.")
    if len(image_bytes) > MAX_IMAGE_SIZE:
        raise ValueError(f"Image too large. Maximum size is {MAX_IMAGE_SIZE // (1024 * 1024)}MB.")

    sniffed = sniff_image_format(image_bytes)
    if not sniffed:
        raise ValueError("Unsupported image format. Allowed formats: jpg, png, webp, gif.")
    mime, ext = sniffed

    if content_type:
        declared = content_type.split(";")[0].strip().lower()
        if declared == "image/jpg":
            declared = "image/jpeg"
        if declared not in ALLOWED_IMAGE_MIME_TYPES:
            raise ValueError("Unsupported image content type.")
        if declared != mime:
            raise ValueError("Image content type does not match the uploaded file signature.")
    return mime, ext


class MediaStore(Protocol):
    def upload(self, data: bytes, folder: str, *, content_type: str | None = None) -> str:
        ...


class LocalMediaStore:
    """Blob store writing under ``root`` and returning URLs under ``base_url``."""

    def __init__(self, root: Path | None = None, base_url: str | None = None) -> None:
        self.root = Path(root or settings.UPLOAD_DIR)
        self.base_url = (base_url if base_url is not None else settings.MEDIA_BASE_URL).rstrip("/")

    def upload(self, data: bytes, folder: str, *, content_type: str | None = None) -> str:
        if not _FOLDER_RE.match(folder or ""):
            raise ValueError(f"Invalid media folder: {folder!r}")
        _mime, ext = validate_image_payload(data, content_type=content_type)
        target_dir = self.root / folder
        target_dir.mkdir(parents=True, exist_ok=True)
        name = f"{uuid.uuid4().hex}{ext}"
        (target_dir / name).write_bytes(data)
        logger.info("Stored %d bytes as %s/%s", len(data), folder, name)
        return f"{self.base_url}/{folder}/{name}"
