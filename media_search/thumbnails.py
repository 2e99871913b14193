import base64
import io
import logging
from pathlib import Path

from PIL import Image, ImageOps

# Large panoramas are thumbnailed immediately, so no pixel limit
Image.MAX_IMAGE_PIXELS = None

logger = logging.getLogger(__name__)

_heif_registered = False


def register_heif() -> None:
    """Register HEIF/HEIC opener with Pillow (idempotent)."""
    global _heif_registered
    if _heif_registered:
        return
    try:
        from pillow_heif import register_heif_opener

        register_heif_opener()
        _heif_registered = True
        logger.info("HEIF support registered")
    except ImportError:
        logger.warning("pillow-heif not installed; HEIF/HEIC files will be skipped")


def to_rgb_thumbnail(img: Image.Image, size: int) -> Image.Image:
    """Orient, convert to RGB and shrink to fit within size x size."""
    img = ImageOps.exif_transpose(img)
    if img.mode != "RGB":
        img = img.convert("RGB")
    img.thumbnail((size, size), Image.LANCZOS)
    return img


def open_thumbnail(source: Path, size: int) -> Image.Image:
    """Open an image file as an in-memory RGB thumbnail.

    Pixels are loaded and the file handle closed before returning so a long
    indexing run doesn't accumulate open fds.
    """
    register_heif()
    with Image.open(source) as img:
        img.load()
        return to_rgb_thumbnail(img, size)


def jpeg_data_url(img: Image.Image, quality: int = 80) -> str:
    """Encode an image as a base64 JPEG data URL for vision chat requests."""
    buf = io.BytesIO()
    img.convert("RGB").save(buf, "JPEG", quality=quality)
    encoded = base64.b64encode(buf.getvalue()).decode("ascii")
    return f"data:image/jpeg;base64,{encoded}"
