"""
Storage for images captured at doors (motion and face attempts).

Image references are opaque keys of the form ``captures/<uuid>.<ext>``; they are
what AccessEvent.image_ref holds.
"""
import re
import uuid
from pathlib import Path
from typing import Optional, Tuple

from core.logger import logger
from storage.s3_client import S3Client

ALLOWED_IMAGE_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}

_IMAGE_REF_RE = re.compile(r"^captures/[0-9a-f]{32}\.(jpg|jpeg|png|webp)$")


def is_valid_image_ref(image_ref: str) -> bool:
    """True for keys this store could have issued (also blocks path traversal)."""
    return bool(image_ref) and bool(_IMAGE_REF_RE.match(image_ref))


def media_type_for(image_ref: str) -> str:
    return ALLOWED_IMAGE_TYPES.get(Path(image_ref).suffix.lower(), "application/octet-stream")


class ImageStore:
    """Capture image store backed by S3 when configured, local disk otherwise."""

    def __init__(self, base_dir: Path, s3_client: Optional[S3Client] = None, prefix: str = "captures"):
        """
        Args:
            base_dir: Local directory (used when s3_client is None)
            s3_client: Optional S3 backend
            prefix: Key prefix for captures
        """
        self.base_dir = Path(base_dir)
        self.s3_client = s3_client
        self.prefix = prefix
        if self.s3_client is None:
            (self.base_dir / self.prefix).mkdir(parents=True, exist_ok=True)

    def save(self, data: bytes, extension: str) -> str:
        """
        Store image bytes under a fresh key.

        Raises:
            ValueError: Unsupported extension or empty payload
        """
        extension = extension.lower()
        if extension not in ALLOWED_IMAGE_TYPES:
            raise ValueError(f"Unsupported image type: {extension}")
        if not data:
            raise ValueError("Empty image")

        image_ref = f"{self.prefix}/{uuid.uuid4().hex}{extension}"
        if self.s3_client is not None:
            self.s3_client.upload_bytes(data, image_ref, content_type=ALLOWED_IMAGE_TYPES[extension])
        else:
            (self.base_dir / image_ref).write_bytes(data)
        logger.info(f"Stored capture image {image_ref} ({len(data)} bytes)")
        return image_ref

    def load(self, image_ref: str) -> Optional[Tuple[bytes, str]]:
        """Return (bytes, media type), or None if the reference is unknown."""
        if not is_valid_image_ref(image_ref):
            return None
        if self.s3_client is not None:
            data = self.s3_client.download_bytes(image_ref)
        else:
            path = self.base_dir / image_ref
            data = path.read_bytes() if path.is_file() else None
        if data is None:
            return None
        return data, media_type_for(image_ref)

    def exists(self, image_ref: str) -> bool:
        if not is_valid_image_ref(image_ref):
            return False
        if self.s3_client is not None:
            return self.s3_client.file_exists(image_ref)
        return (self.base_dir / image_ref).is_file()
