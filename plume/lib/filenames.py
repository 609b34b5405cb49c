"""Safe, collision-resistant names for stored files."""

from __future__ import annotations

import hashlib
import re
import secrets
import time
import uuid
from typing import Literal

FilenameStrategy = Literal["uuid", "timestamp", "original"]

_UNSAFE_RE = re.compile(r"[^A-Za-z0-9._\-() ]")
MAX_NAME_LENGTH = 255


def sanitize_filename(filename: str) -> str:
    """Strip directories and keep only letters, digits, ``._-()`` and spaces."""
    name = filename.replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_RE.sub("_", name).strip().lstrip(".")
    return name[:MAX_NAME_LENGTH] or "file"


def split_name(filename: str) -> tuple[str, str]:
    """``Photo.JPG`` → ``("Photo", "jpg")``; no extension gives ``""``."""
    stem, dot, ext = filename.rpartition(".")
    if not dot or not stem:
        return filename, ""
    return stem, ext.lower()


def generate_filename(
    original_name: str,
    strategy: FilenameStrategy = "uuid",
    *,
    use_hash: bool = False,
    extension: str | None = None,
) -> str:
    """Build a stored filename from an upload's original name.

    ``extension`` replaces the original extension, e.g. after the file was
    transcoded to another format.
    """
    stem, ext = split_name(sanitize_filename(original_name))
    if extension is not None:
        ext = extension.lower().lstrip(".")

    if strategy == "uuid":
        base = str(uuid.uuid4())
    elif strategy == "timestamp":
        base = f"{int(time.time() * 1000)}_{secrets.token_hex(3)}"
    elif strategy == "original":
        base = stem.replace(" ", "_")
    else:
        raise ValueError(f"Unknown filename strategy: {strategy!r}")

    if use_hash:
        seed = f"{original_name}{time.time_ns()}{secrets.token_hex(8)}"
        base = f"{base}_{hashlib.sha256(seed.encode()).hexdigest()[:16]}"

    return f"{base}.{ext}" if ext else base


def remote_key_name(original_name: str, extension: str | None = None) -> str:
    """``<uuid>_<stem>.<ext>`` used for object-store keys."""
    stem, ext = split_name(sanitize_filename(original_name))
    if extension is not None:
        ext = extension.lower().lstrip(".")
    stem = stem.replace(" ", "_")
    name = f"{uuid.uuid4().hex}_{stem}"
    return f"{name}.{ext}" if ext else name
