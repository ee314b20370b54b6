"""
Image normalization using Pillow.

Every probe and candidate image is re-encoded the same way before it reaches
the comparator:
1. Decode (bytes, base64 payload or fetched URL)
2. Apply EXIF orientation
3. Flatten transparency onto an opaque white background
4. Fit inside the configured bounding box (never upscaled)
5. Encode as JPEG, retrying once at a lower quality if over the byte ceiling
"""

import asyncio
import base64
import binascii
import io
import re
from dataclasses import dataclass
from typing import Optional, Union

import structlog
from PIL import Image, ImageOps, UnidentifiedImageError

from fetcher.image_fetcher import ImageFetcher

logger = structlog.get_logger()

DATA_URL_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)

JPEG_CONTENT_TYPE = "image/jpeg"


@dataclass
class NormalizedImage:
    """A canonical JPEG ready for storage and comparison."""
    data: bytes
    width: int
    height: int
    quality: int
    content_type: str = JPEG_CONTENT_TYPE

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class NormalizationResult:
    """Result of image normalization."""
    success: bool
    image: Optional[NormalizedImage] = None
    source_url: Optional[str] = None
    original_size: Optional[int] = None
    error: Optional[str] = None
    alpha_flattened: bool = False
    recompressed: bool = False


def decode_image_payload(payload: str) -> bytes:
    """
    Decode a base64 image payload, with or without a data: URL prefix.

    Raises:
        ValueError: If the payload is not valid base64
    """
    stripped = "".join(DATA_URL_PREFIX.sub("", payload.strip()).split())
    try:
        return base64.b64decode(stripped, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Invalid base64 image payload: {e}") from e


def is_url(value: str) -> bool:
    return value.strip().lower().startswith(("http://", "https://"))


class ImageNormalizer:
    """
    Produces bounded, opaque JPEGs from arbitrary image input.
    """

    BACKGROUND = (255, 255, 255)

    def __init__(
        self,
        fetcher: Optional[ImageFetcher] = None,
        max_width: int = 1920,
        max_height: int = 1080,
        quality: int = 85,
        fallback_quality: int = 60,
        max_bytes: int = 5 * 1024 * 1024
    ):
        """
        Initialize normalizer.

        Args:
            fetcher: Fetcher used for URL input
            max_width: Bounding box width
            max_height: Bounding box height
            quality: First-pass JPEG quality
            fallback_quality: Second-pass JPEG quality when the first is too large
            max_bytes: Byte ceiling for the encoded image
        """
        self.fetcher = fetcher or ImageFetcher()
        self.max_width = max_width
        self.max_height = max_height
        self.quality = quality
        self.fallback_quality = fallback_quality
        self.max_bytes = max_bytes

    @classmethod
    def from_settings(cls, settings, fetcher: Optional[ImageFetcher] = None) -> "ImageNormalizer":
        return cls(
            fetcher=fetcher,
            max_width=settings.max_width,
            max_height=settings.max_height,
            quality=settings.jpeg_quality,
            fallback_quality=settings.fallback_quality,
            max_bytes=settings.max_image_bytes,
        )

    async def normalize(self, source: Union[bytes, str, None]) -> NormalizationResult:
        """
        Normalize raw bytes, a base64 payload or an image URL.

        Args:
            source: Image input

        Returns:
            NormalizationResult with the encoded image, or an error
        """
        if source is None:
            return NormalizationResult(success=False, error="No image provided")

        source_url = None
        if isinstance(source, str):
            if is_url(source):
                source_url = source.strip()
                fetched = await self.fetcher.fetch(source_url)
                if not fetched.success:
                    return NormalizationResult(success=False, source_url=source_url, error=fetched.error)
                data = fetched.content
            else:
                try:
                    data = decode_image_payload(source)
                except ValueError as e:
                    return NormalizationResult(success=False, error=str(e))
        else:
            data = source

        if not data:
            return NormalizationResult(success=False, source_url=source_url, error="Empty image payload")

        # Pillow decoding and encoding is CPU bound
        result = await asyncio.to_thread(self.normalize_bytes, data)
        result.source_url = source_url
        return result

    def normalize_bytes(self, data: bytes) -> NormalizationResult:
        """Synchronous normalization of already-loaded bytes."""
        original_size = len(data)
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.load()
                image = ImageOps.exif_transpose(img)
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
            logger.warning("Failed to decode image", size=original_size, error=str(e))
            return NormalizationResult(
                success=False,
                original_size=original_size,
                error=f"Failed to read image: {e}"
            )

        image, flattened = self._flatten_alpha(image)
        image.thumbnail((self.max_width, self.max_height), Image.Resampling.LANCZOS)

        encoded = self._encode(image, self.quality)
        recompressed = False
        quality = self.quality

        if len(encoded) > self.max_bytes:
            logger.info(
                "Image exceeds byte ceiling, reducing quality",
                size=len(encoded),
                max_bytes=self.max_bytes
            )
            encoded = self._encode(image, self.fallback_quality)
            recompressed = True
            quality = self.fallback_quality

            if len(encoded) > self.max_bytes:
                return NormalizationResult(
                    success=False,
                    original_size=original_size,
                    error=f"Image still exceeds {self.max_bytes} bytes after compression",
                    alpha_flattened=flattened,
                    recompressed=True
                )

        return NormalizationResult(
            success=True,
            image=NormalizedImage(
                data=encoded,
                width=image.width,
                height=image.height,
                quality=quality
            ),
            original_size=original_size,
            alpha_flattened=flattened,
            recompressed=recompressed
        )

    def _flatten_alpha(self, image: Image.Image) -> tuple[Image.Image, bool]:
        """Composite any transparency onto the background; always returns RGB."""
        has_alpha = image.mode in ("RGBA", "LA") or (
            image.mode == "P" and "transparency" in image.info
        )
        if not has_alpha:
            return image.convert("RGB"), False

        rgba = image.convert("RGBA")
        background = Image.new("RGB", rgba.size, self.BACKGROUND)
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background, True

    @staticmethod
    def _encode(image: Image.Image, quality: int) -> bytes:
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=quality, optimize=True)
        return buffer.getvalue()
