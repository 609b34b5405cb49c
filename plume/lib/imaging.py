"""Image re-encoding and thumbnail rendering using Pillow."""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from plume.config import ThumbnailConfig

_FORMAT_ALIASES = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "gif": "GIF",
    "avif": "AVIF",
}

_FORMAT_TO_CONTENT_TYPE = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "AVIF": "image/avif",
}

_FORMAT_TO_EXTENSION = {
    "JPEG": "jpg",
    "PNG": "png",
    "WEBP": "webp",
    "GIF": "gif",
    "AVIF": "avif",
}

# Formats that cannot carry an alpha channel
_NO_ALPHA = {"JPEG"}


class ImageProcessingError(Exception):
    """Raised when bytes cannot be decoded or re-encoded as an image."""


@dataclass(frozen=True)
class ThumbnailSpec:
    """Geometry and encoding of a derived thumbnail."""

    width: int = 400
    height: int = 400
    format: str = "webp"
    quality: int = 60
    fit: Literal["cover", "contain"] = "cover"

    @classmethod
    def from_config(cls, config: ThumbnailConfig) -> ThumbnailSpec:
        return cls(
            width=config.width,
            height=config.height,
            format=config.format,
            quality=config.quality,
            fit=config.fit,
        )

    @property
    def extension(self) -> str:
        return extension_for(self.format)


def pil_format(name: str) -> str:
    """Map a user-facing format name (``jpg``, ``webp``) to Pillow's."""
    try:
        return _FORMAT_ALIASES[name.lower().lstrip(".")]
    except KeyError:
        raise ValueError(f"Unsupported image format: {name!r}") from None


def content_type_for(name: str) -> str:
    return _FORMAT_TO_CONTENT_TYPE[pil_format(name)]


def extension_for(name: str) -> str:
    return _FORMAT_TO_EXTENSION[pil_format(name)]


def detect_image_content_type(data: bytes) -> str | None:
    """Detect image content type from magic bytes.

    Returns ``None`` if the data does not match a known image signature.
    """
    if data[:3] == b"\xff\xd8\xff":
        return "image/jpeg"
    if data[:8] == b"\x89PNG\r\n\x1a\n":
        return "image/png"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    if data[:6] in (b"GIF87a", b"GIF89a"):
        return "image/gif"
    if data[4:12] in (b"ftypavif", b"ftypavis"):
        return "image/avif"
    return None


def _open(data: bytes) -> Image.Image:
    if not data:
        raise ImageProcessingError("Image data is empty")
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise ImageProcessingError(f"Cannot decode image: {exc}") from exc
    return img


def image_format(data: bytes) -> str | None:
    """Pillow's format name for ``data`` (``JPEG``, ``PNG``...), if decodable."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            return img.format
    except (UnidentifiedImageError, OSError):
        return None


def _encode(img: Image.Image, fmt: str, *, quality: int, effort: int = 6, lossless: bool = False) -> bytes:
    if fmt in _NO_ALPHA and img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    elif img.mode == "P" and fmt != "GIF":
        img = img.convert("RGBA")

    save_kwargs: dict = {}
    if fmt == "JPEG":
        save_kwargs["quality"] = quality
        save_kwargs["optimize"] = True
        save_kwargs["progressive"] = True
    elif fmt == "PNG":
        save_kwargs["optimize"] = True
    elif fmt == "WEBP":
        save_kwargs["quality"] = quality
        save_kwargs["method"] = min(effort, 6)
        save_kwargs["lossless"] = lossless
    elif fmt == "AVIF":
        save_kwargs["quality"] = quality
        save_kwargs["speed"] = max(0, 10 - effort)
    elif fmt == "GIF":
        save_kwargs["optimize"] = True

    buf = io.BytesIO()
    try:
        img.save(buf, format=fmt, **save_kwargs)
    except (OSError, KeyError, ValueError) as exc:
        raise ImageProcessingError(f"Cannot encode image as {fmt}: {exc}") from exc
    return buf.getvalue()


def compress_image(
    data: bytes,
    *,
    format: str,
    quality: int = 70,
    effort: int = 6,
    lossless: bool = False,
) -> bytes:
    """Re-encode ``data`` to ``format`` without resizing."""
    fmt = pil_format(format)
    img = ImageOps.exif_transpose(_open(data))
    return _encode(img, fmt, quality=quality, effort=effort, lossless=lossless)


def make_thumbnail(data: bytes, spec: ThumbnailSpec) -> bytes:
    """Render a thumbnail of ``data``.

    ``cover`` crops to exactly ``width x height`` around the center;
    ``contain`` fits inside the box, preserving aspect ratio.
    """
    fmt = pil_format(spec.format)
    img = ImageOps.exif_transpose(_open(data))
    if spec.fit == "cover":
        img = ImageOps.fit(img, (spec.width, spec.height), Image.LANCZOS)
    else:
        img = ImageOps.contain(img, (spec.width, spec.height), Image.LANCZOS)
    return _encode(img, fmt, quality=spec.quality)


# Animated GIFs would lose their frames when re-encoded
_SKIP_COMPRESSION = {"GIF"}


@dataclass(frozen=True)
class CompressionResult:
    data: bytes
    format: str
    compressed: bool

    @property
    def content_type(self) -> str:
        return _FORMAT_TO_CONTENT_TYPE[self.format]

    @property
    def extension(self) -> str:
        return _FORMAT_TO_EXTENSION[self.format]


def recompress(
    data: bytes,
    *,
    format: str,
    quality: int = 70,
    effort: int = 6,
    lossless: bool = False,
) -> CompressionResult | None:
    """Apply the upload compression policy to ``data``.

    Returns ``None`` for data that is not a compressible image. When the
    target format differs from the source the re-encoded bytes are always
    used; for the same format the original bytes win unless the re-encoded
    ones are strictly smaller.
    """
    source_format = image_format(data)
    if source_format is None or source_format in _SKIP_COMPRESSION:
        return None
    if source_format not in _FORMAT_TO_EXTENSION:
        return None

    target_format = pil_format(format)
    encoded = compress_image(data, format=format, quality=quality, effort=effort, lossless=lossless)
    if target_format == source_format and len(encoded) >= len(data):
        return CompressionResult(data=data, format=source_format, compressed=False)
    return CompressionResult(data=encoded, format=target_format, compressed=True)
