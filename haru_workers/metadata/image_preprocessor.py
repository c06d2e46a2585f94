"""
Image Preprocessing for AI Extraction.

Features:
- Locator resolution (gs://, REST gateway and public URLs)
- Aspect-preserving downscale into a bounding box (never upscales)
- JPEG re-encoding with a byte budget and one tighter second pass
- Falls back to the original bytes when re-encoding fails
"""

import io
import logging
import time
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from PIL import Image, ImageOps, UnidentifiedImageError

from haru_backend.storage.locator import UnsupportedLocatorError, parse_locator
from haru_backend.storage.object_store import ObjectNotFoundError, ObjectStore, StorageError
from haru_workers.metadata.errors import ImageProcessingError
from haru_workers.metadata.types import ProcessedImage

logger = logging.getLogger(__name__)


MEDIA_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
}


@dataclass
class ImageConfig:
    """Configuration for photo preprocessing."""
    max_width: int = 800
    max_height: int = 800
    quality: int = 80  # 0-100
    format: str = "JPEG"
    max_bytes: int = 1024 * 1024  # 1 MiB budget for the inline payload
    second_pass_scale: float = 0.8
    quality_step: int = 20
    min_quality: int = 30


def fit_within(width: int, height: int, max_width: int, max_height: int) -> Tuple[int, int]:
    """
    Compute the largest size inside the box that keeps the aspect ratio.

    Never returns a size larger than the input.
    """
    if width <= max_width and height <= max_height:
        return width, height

    ratio = min(max_width / width, max_height / height)
    return max(1, int(width * ratio)), max(1, int(height * ratio))


def sniff_media_type(data: bytes) -> str:
    """Guess the media type from magic bytes."""
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if data[4:12] in (b"ftypheic", b"ftypheix", b"ftypmif1"):
        return "image/heic"
    return "image/jpeg"


class ImagePreprocessor:
    """
    Downloads a certification photo and prepares it for the AI request.

    Usage:
        preprocessor = ImagePreprocessor(LocalObjectStore("storage"))
        image = preprocessor.process("gs://certifications/u1/run.jpg")
    """

    def __init__(
        self,
        store: ObjectStore,
        config: Optional[ImageConfig] = None,
        raw_schemes: Iterable[str] = ("gs",)
    ):
        self.store = store
        self.config = config or ImageConfig()
        self.raw_schemes = tuple(raw_schemes)

    def process(self, image_reference: str) -> ProcessedImage:
        """
        Fetch, resize and re-encode the referenced photo.

        Args:
            image_reference: Locator string of the stored photo

        Returns:
            ProcessedImage with encoded bytes and media type

        Raises:
            ImageProcessingError: Locator unsupported, object missing or undecodable
        """
        start = time.time()
        original = self._download(image_reference)
        image = self._decode(original, image_reference)

        try:
            processed = self._encode_within_budget(image, len(original))
        except (OSError, ValueError) as e:
            # The endpoint can usually still take the larger original
            logger.warning(f"Re-encoding failed for {image_reference}, using original bytes: {e}")
            processed = ProcessedImage(
                encoded_bytes=original,
                media_type=sniff_media_type(original),
                byte_size=len(original),
                original_size=len(original),
                width=image.width,
                height=image.height,
                resized=False,
            )

        logger.info(
            f"Preprocessed image: {processed.original_size:,} -> {processed.byte_size:,} bytes "
            f"({processed.width}x{processed.height}) in {time.time() - start:.2f}s"
        )
        return processed

    def _download(self, image_reference: str) -> bytes:
        try:
            location = parse_locator(image_reference, self.raw_schemes)
        except UnsupportedLocatorError as e:
            raise ImageProcessingError(str(e)) from e

        try:
            data = self.store.download(location)
        except ObjectNotFoundError as e:
            raise ImageProcessingError(f"Image not found: {location}") from e
        except StorageError as e:
            raise ImageProcessingError(f"Failed to download image: {e}") from e

        if not data:
            raise ImageProcessingError(f"Image is empty: {location}")
        return data

    def _decode(self, data: bytes, image_reference: str) -> Image.Image:
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise ImageProcessingError(f"Cannot decode image {image_reference}: {e}") from e

        # Phone photos carry rotation in EXIF
        img = ImageOps.exif_transpose(img)

        # Convert to RGB if needed (for JPEG compatibility)
        if img.mode in ("RGBA", "P", "LA"):
            img = img.convert("RGBA")
            background = Image.new("RGB", img.size, (255, 255, 255))
            background.paste(img, mask=img.split()[3])
            img = background
        elif img.mode != "RGB":
            img = img.convert("RGB")
        return img

    def _encode_within_budget(self, image: Image.Image, original_size: int) -> ProcessedImage:
        cfg = self.config
        size = fit_within(image.width, image.height, cfg.max_width, cfg.max_height)
        data = self._encode(image, size, cfg.quality)

        if len(data) > cfg.max_bytes:
            smaller = (
                max(1, int(size[0] * cfg.second_pass_scale)),
                max(1, int(size[1] * cfg.second_pass_scale)),
            )
            quality = max(cfg.min_quality, cfg.quality - cfg.quality_step)
            logger.info(
                f"Encoded size {len(data):,} exceeds {cfg.max_bytes:,} bytes, "
                f"retrying at {smaller[0]}x{smaller[1]} q={quality}"
            )
            size = smaller
            data = self._encode(image, size, quality)

        return ProcessedImage(
            encoded_bytes=data,
            media_type=MEDIA_TYPES.get(cfg.format.upper(), "image/jpeg"),
            byte_size=len(data),
            original_size=original_size,
            width=size[0],
            height=size[1],
            resized=size != image.size,
        )

    def _encode(self, image: Image.Image, size: Tuple[int, int], quality: int) -> bytes:
        if size != image.size:
            logger.debug(f"Resizing from {image.size} to {size}")
            image = image.resize(size, Image.Resampling.LANCZOS)

        buffer = io.BytesIO()
        image.save(buffer, self.config.format.upper(), quality=quality, optimize=True)
        return buffer.getvalue()
