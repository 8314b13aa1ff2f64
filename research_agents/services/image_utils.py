# =============================================================================
# Image Utilities — Compression Before Vision Calls
# =============================================================================
#
# Vision models bill by image size, and Anthropic downsamples anything wider
# than 1568px anyway. Images are resized to that width (aspect ratio kept)
# and re-encoded as JPEG before being attached to an analysis prompt.
#
# Pillow is synchronous; callers in async code wrap `compress_image` with
# asyncio.to_thread().
# =============================================================================

import base64
import io
import logging
from dataclasses import dataclass

from PIL import Image

from research_agents.config import settings

logger = logging.getLogger(__name__)


@dataclass
class CompressedImage:
    base64: str
    media_type: str
    size_kb: int
    original_size_kb: int


def compress_image(
    image_base64: str,
    mime_type: str = "image/jpeg",
    max_width: int | None = None,
    quality: int | None = None,
) -> CompressedImage:
    """
    Resize to at most `max_width` pixels wide and re-encode as JPEG.

    WebP input keeps its format (it is already compact). On any decoding
    or encoding error the original image is returned unchanged.
    """
    max_width = max_width or settings.image_max_width
    quality = quality or settings.image_quality

    raw = base64.b64decode(image_base64)
    original_size_kb = round(len(raw) / 1024)

    try:
        with Image.open(io.BytesIO(raw)) as img:
            if img.width > max_width:
                height = round(img.height * max_width / img.width)
                img = img.resize((max_width, height), Image.Resampling.LANCZOS)

            out = io.BytesIO()
            if mime_type == "image/webp":
                img.save(out, format="WEBP")
                media_type = "image/webp"
            else:
                # JPEG has no alpha channel or palette
                if img.mode not in ("RGB", "L"):
                    img = img.convert("RGB")
                img.save(out, format="JPEG", quality=quality, optimize=True)
                media_type = "image/jpeg"
    except Exception as e:
        logger.warning("Image compression failed, using original: %s", e)
        return CompressedImage(
            base64=image_base64,
            media_type=mime_type,
            size_kb=original_size_kb,
            original_size_kb=original_size_kb,
        )

    compressed = out.getvalue()
    logger.debug(
        "Compressed image %dKB → %dKB (max_width=%d, quality=%d)",
        original_size_kb, round(len(compressed) / 1024), max_width, quality,
    )
    return CompressedImage(
        base64=base64.b64encode(compressed).decode("ascii"),
        media_type=media_type,
        size_kb=round(len(compressed) / 1024),
        original_size_kb=original_size_kb,
    )


def estimate_image_tokens(image_base64: str) -> int:
    """Rough token estimate for an attached image: one token per 4 base64 chars."""
    return round(len(image_base64) / 4)
