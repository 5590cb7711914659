"""Loading of the single input image a generation session works from."""

from __future__ import annotations

import io
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path

import httpx
from PIL import Image, UnidentifiedImageError

from .errors import SUPPORTED_IMAGE_EXTENSIONS, TransientNetworkError, ValidationError

logger = logging.getLogger(__name__)

_HEIF_REGISTERED = False

MIN_IMAGE_BYTES = 1000

_FORMAT_MIME_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
    "HEIF": "image/heif",
}


def _ensure_heif_support() -> None:
    """Register pillow-heif opener so Pillow can read HEIC/HEIF images."""
    global _HEIF_REGISTERED
    if _HEIF_REGISTERED:
        return
    try:
        import pillow_heif

        pillow_heif.register_heif_opener()
        _HEIF_REGISTERED = True
    except (ImportError, ModuleNotFoundError):
        pass


@dataclass(frozen=True)
class SourceImage:
    """Encoded image bytes plus the pixel dimensions read from them."""

    data: bytes
    width: int
    height: int
    mime_type: str = "image/jpeg"

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def is_readable(self) -> bool:
        """False when the header could not be parsed (dimensions unknown)."""
        return self.width > 0 and self.height > 0

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height if self.is_readable else 1.0

    @property
    def filename(self) -> str:
        extension = mimetypes.guess_extension(self.mime_type) or ".jpg"
        return f"image{extension}"

    def decode(self) -> Image.Image:
        """Decode to an RGB Pillow image; the caller owns (and closes) it."""
        _ensure_heif_support()
        with Image.open(io.BytesIO(self.data)) as img:
            return img.convert("RGB")

    @classmethod
    def from_bytes(cls, data: bytes, mime_type: str | None = None, strict: bool = True) -> "SourceImage":
        """Read dimensions from encoded bytes.

        With ``strict=False`` unreadable bytes are kept with 0x0 dimensions so
        the caller can decide later what to do with them.

        Raises:
            ValidationError: If the bytes are not a readable image and *strict*.
        """
        _ensure_heif_support()
        try:
            with Image.open(io.BytesIO(data)) as img:
                width, height = img.size
                detected = _FORMAT_MIME_TYPES.get(img.format or "", None)
        except (UnidentifiedImageError, OSError) as exc:
            if strict:
                raise ValidationError(f"Unreadable image data: {exc}") from exc
            logger.warning("Image header unreadable (%d bytes): %s", len(data), exc)
            return cls(data=data, width=0, height=0, mime_type=mime_type or "image/jpeg")
        if width <= 0 or height <= 0:
            raise ValidationError(f"Invalid image dimensions {width}x{height}")
        return cls(data=data, width=width, height=height, mime_type=mime_type or detected or "image/jpeg")

    @classmethod
    def from_path(cls, path: Path, strict: bool = True) -> "SourceImage":
        path = Path(path)
        if path.suffix.lower() not in SUPPORTED_IMAGE_EXTENSIONS:
            raise ValidationError(f"Unsupported image format: {path.suffix}")
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise ValidationError(f"Could not read image {path}: {exc}") from exc
        image = cls.from_bytes(data, strict=strict)
        logger.info("Loaded %s (%dx%d, %d bytes)", path, image.width, image.height, image.size_bytes)
        return image

    @classmethod
    async def fetch(cls, url: str, client: httpx.AsyncClient | None = None, strict: bool = True) -> "SourceImage":
        """Download an image over HTTP(S).

        Raises:
            TransientNetworkError: On connection failures or HTTP error statuses.
            ValidationError: If the downloaded bytes are not an image.
        """
        owns_client = client is None
        client = client or httpx.AsyncClient(timeout=30.0, follow_redirects=True)
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"Failed to fetch image {url}: {exc}") from exc
        finally:
            if owns_client:
                await client.aclose()
        content_type = response.headers.get("content-type", "").split(";")[0].strip() or None
        return cls.from_bytes(response.content, mime_type=content_type, strict=strict)


async def load_source_image(reference: str, strict: bool = True) -> SourceImage:
    """Resolve a path or URL to a :class:`SourceImage`."""
    if reference.startswith(("http://", "https://")):
        return await SourceImage.fetch(reference, strict=strict)
    return SourceImage.from_path(Path(reference), strict=strict)
