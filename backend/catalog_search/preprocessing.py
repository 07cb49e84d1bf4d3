"""
Upload preprocessing for image search.

Turns an arbitrary uploaded photo into the canonical bitmap the encoder
expects: RGB, fitted inside a fixed bounding box, re-encoded as a plain JPEG
with no metadata. Cheap checks (size, declared type, magic bytes) run before
any decode work.
"""

import io
import logging
from typing import Iterable, Optional

from PIL import Image, ImageOps, UnidentifiedImageError

from . import config
from .errors import CorruptImage, InvalidInput, UnsupportedFormat

logger = logging.getLogger(__name__)

_MAGIC_PREFIXES = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
)

_MIME_ALIASES = {"image/jpg": "image/jpeg", "image/pjpeg": "image/jpeg"}


def sniff_mime_type(raw_bytes: bytes) -> Optional[str]:
    """Guess the MIME type from the file signature, None when unknown."""
    if raw_bytes[:4] == b"RIFF" and raw_bytes[8:12] == b"WEBP":
        return "image/webp"
    for prefix, mime in _MAGIC_PREFIXES:
        if raw_bytes.startswith(prefix):
            return mime
    return None


def _normalize_mime(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    mime = content_type.split(";", 1)[0].strip().lower()
    return _MIME_ALIASES.get(mime, mime)


def _flatten_to_rgb(img: Image.Image) -> Image.Image:
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.split()[-1])
        return background
    return img.convert("RGB")


def preprocess(raw_bytes: bytes,
               max_size_bytes: int = config.MAX_UPLOAD_BYTES,
               allowed_mime_types: Iterable[str] = config.ALLOWED_MIME_TYPES,
               content_type: Optional[str] = None,
               max_side: int = config.PREPROCESS_MAX_SIDE,
               quality: int = config.PREPROCESS_JPEG_QUALITY) -> bytes:
    """
    Validate and canonicalize an uploaded image.

    Args:
        raw_bytes: The uploaded file content.
        max_size_bytes: Hard ceiling on the upload size.
        allowed_mime_types: MIME allow-list.
        content_type: MIME type declared by the client, if any.
        max_side: Bounding box side; larger images are shrunk to fit,
            smaller ones are left alone.
        quality: JPEG quality of the re-encoded output.

    Returns:
        JPEG bytes of the canonical image.

    Raises:
        InvalidInput: empty or oversized upload.
        UnsupportedFormat: declared or detected type outside the allow-list.
        CorruptImage: the bytes do not decode as an image.
    """
    if not raw_bytes:
        raise InvalidInput("empty upload", user_message="Please upload an image to search with.")
    if len(raw_bytes) > max_size_bytes:
        raise InvalidInput(
            "upload of %d bytes exceeds %d" % (len(raw_bytes), max_size_bytes),
            user_message="Image is too large. The maximum size is %d MB." % (max_size_bytes // (1024 * 1024)),
        )

    allowed = {_normalize_mime(m) for m in allowed_mime_types}
    declared = _normalize_mime(content_type)
    if declared and declared != "application/octet-stream" and declared not in allowed:
        raise UnsupportedFormat("declared content type %s not allowed" % declared)
    sniffed = sniff_mime_type(raw_bytes)
    if sniffed not in allowed:
        raise UnsupportedFormat("detected content type %s not allowed" % sniffed)

    try:
        with Image.open(io.BytesIO(raw_bytes)) as img:
            img.load()
            try:
                img = ImageOps.exif_transpose(img)
            except Exception as e:  # noqa: BLE001
                # malformed EXIF only costs us the orientation fix
                logger.warning("Ignoring unreadable EXIF orientation: %s", e)
            img = _flatten_to_rgb(img)
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise CorruptImage("decode failed: %s" % e)
    except Image.DecompressionBombError as e:
        raise InvalidInput("decompression bomb: %s" % e, user_message="Image dimensions are too large.")

    original_size = img.size
    img.thumbnail((max_side, max_side), Image.Resampling.LANCZOS)

    out = io.BytesIO()
    img.save(out, format="JPEG", quality=quality, optimize=True)
    logger.debug("Preprocessed upload %s %s -> %s (%d bytes)",
                 sniffed, original_size, img.size, out.tell())
    return out.getvalue()
