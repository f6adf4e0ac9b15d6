import base64
import io
import re
import logging
from typing import Optional
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
}


def sniff_mime_type(data: bytes, default: str = "image/jpeg") -> str:
    """Detects the MIME type of an image buffer with Pillow, falling back to `default`."""
    if not data:
        return default
    try:
        with Image.open(io.BytesIO(data)) as img:
            return Image.MIME.get(img.format, default)
    except (UnidentifiedImageError, OSError):
        logger.debug("Could not identify image buffer; assuming %s", default)
        return default


def extension_for(mime_type: str) -> str:
    return _EXTENSIONS.get(mime_type, ".jpg")


def mime_for_path(path: str, default: str = "image/jpeg") -> str:
    lowered = path.lower()
    for mime, ext in _EXTENSIONS.items():
        if lowered.endswith(ext):
            return mime
    if lowered.endswith(".jpeg"):
        return "image/jpeg"
    return default


def to_data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('utf-8')}"


def underscored(text: str) -> str:
    """Archive-safe name: whitespace runs become underscores."""
    return re.sub(r"\s+", "_", text.strip())


def slugify(text: str, fallback: str = "comic") -> str:
    slug = text.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_-]+", "-", slug)
    slug = slug.strip("-")[:75]
    return slug or fallback


def aspect_size(aspect_ratio: str, long_side: int = 1024) -> tuple:
    """Pixel size for an 'W:H' aspect ratio with the longer side fixed."""
    try:
        w, h = (int(part) for part in aspect_ratio.split(":"))
    except ValueError:
        return long_side, long_side
    if w >= h:
        return long_side, max(1, round(long_side * h / w))
    return max(1, round(long_side * w / h)), long_side


def decode_base64_image(payload) -> Optional[bytes]:
    if payload is None:
        return None
    if isinstance(payload, bytes):
        return payload
    return base64.b64decode(payload)
