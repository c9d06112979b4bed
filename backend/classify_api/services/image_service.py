"""
Classify API Backend — Image Intake Service
===========================================

What:  Decodes, validates and fingerprints images submitted for classification.
How:   Accepts raw multipart bytes or base64 (with or without a data URL
       prefix), checks size and the real content type, and hashes the bytes.
Who:   Called by the classify route before anything is written to the
       database or sent to the gateway.

Validation order (cheapest first):
    1. Empty check
    2. Base64 decode (JSON/form input only)
    3. Size check against settings.max_file_size
    4. MIME type check via libmagic (reads the file header bytes)

Images are never written to disk; Ollama receives them base64-encoded and
only the SHA-256 digest is persisted.
"""

import base64
import binascii
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import Optional

from classify_api.config import settings
from classify_api.exceptions import ValidationError

logger = logging.getLogger(__name__)

# Formats the vision model accepts
ALLOWED_MIME_TYPES = {
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
}

_DATA_URL_PREFIX = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,")

# Header signatures used when libmagic is unavailable
_SIGNATURES = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


@dataclass
class ImagePayload:
    """A validated image ready for classification."""

    content: bytes
    mime_type: str
    sha256: str

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def base64(self) -> str:
        return base64.b64encode(self.content).decode("ascii")


class ImageService:
    """Stateless validator for uploaded images."""

    def __init__(self, max_size: Optional[int] = None):
        self.max_size = max_size or settings.max_file_size

    def decode_base64(self, data: str) -> bytes:
        """
        Decode a base64 string, stripping a `data:image/...;base64,` prefix.

        Raises:
            ValidationError if the string is empty or not valid base64
        """
        cleaned = _DATA_URL_PREFIX.sub("", data.strip(), count=1)
        cleaned = "".join(cleaned.split())
        if not cleaned:
            raise ValidationError(message="Image data is empty", field="image")

        try:
            return base64.b64decode(cleaned, validate=True)
        except (binascii.Error, ValueError):
            raise ValidationError(
                message="Image data is not valid base64",
                field="image",
            )

    def validate_size(self, content: bytes) -> None:
        if not content:
            raise ValidationError(message="Image data is empty", field="image")

        if len(content) > self.max_size:
            max_mb = self.max_size / (1024 * 1024)
            raise ValidationError(
                message=(
                    f"Image size ({len(content) / (1024 * 1024):.1f}MB) exceeds "
                    f"maximum of {max_mb:.0f}MB."
                ),
                field="image",
                context={"max_size_mb": max_mb, "actual_size": len(content)},
            )

    def detect_mime_type(self, content: bytes) -> str:
        try:
            import magic
            return magic.from_buffer(content[:2048], mime=True)
        except ImportError:
            # python-magic not installed (e.g., in CI without libmagic)
            logger.warning(
                "python-magic not available, falling back to header signature detection. "
                "Install libmagic for production security."
            )
            return sniff_mime_type(content)

    def validate_mime_type(self, content: bytes) -> str:
        """
        Check the real content type from the file header.

        Raises:
            ValidationError if the type is not an allowed image format
        """
        mime_type = self.detect_mime_type(content)
        if mime_type not in ALLOWED_MIME_TYPES:
            raise ValidationError(
                message=(
                    f"File content type '{mime_type}' is not supported. "
                    "Upload a JPEG, PNG, GIF or WebP image."
                ),
                field="image",
                context={"detected_mime": mime_type, "allowed": sorted(ALLOWED_MIME_TYPES)},
            )
        return mime_type

    def validate(self, content: bytes) -> ImagePayload:
        """Size and type checks on raw bytes, then fingerprint."""
        self.validate_size(content)
        mime_type = self.validate_mime_type(content)
        digest = hashlib.sha256(content).hexdigest()
        logger.debug("Image accepted: %s, %d bytes, sha256=%s", mime_type, len(content), digest[:12])
        return ImagePayload(content=content, mime_type=mime_type, sha256=digest)

    def from_base64(self, data: str) -> ImagePayload:
        return self.validate(self.decode_base64(data))


def sniff_mime_type(content: bytes) -> str:
    for signature, mime_type in _SIGNATURES:
        if content.startswith(signature):
            return mime_type
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "image/webp"
    return "application/octet-stream"


image_service = ImageService()
