"""Traversal-safe conversion between web paths, relative paths and disk paths.

Every path that reaches the filesystem goes through two gates:

* :func:`normalize_to_relative` turns whatever a client sent (full URL,
  ``/uploads/...`` web path, absolute path under the root, bare relative
  path) into a clean root-relative POSIX path, rejecting ``..`` segments and
  escapes.
* :func:`resolve_absolute` joins that relative path onto the storage root,
  resolves symlinks and checks the result is still inside the root.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import unquote, urlparse

from plume.lib.exceptions import BadPath

_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_MULTI_SLASH_RE = re.compile(r"/{2,}")


def _clean_prefix(public_prefix: str) -> str:
    return "/" + public_prefix.strip("/") if public_prefix.strip("/") else ""


def _strip_prefix(path: str, public_prefix: str) -> tuple[str, bool]:
    """Remove the public mount prefix. Returns (rest, was_prefixed)."""
    prefix = _clean_prefix(public_prefix)
    if not prefix:
        return path, False
    bare = prefix.lstrip("/")
    for candidate in (prefix, bare):
        if path == candidate:
            return "", True
        if path.startswith(candidate + "/"):
            return path[len(candidate) + 1:], True
    return path, False


def normalize_to_relative(
    value: str,
    *,
    public_prefix: str = "/uploads",
    root: Path | str | None = None,
) -> str:
    """Normalize a URL, web path or relative path to a root-relative path.

    Raises:
        BadPath: for empty input, NUL bytes, ``..`` segments, drive letters
            or absolute paths outside both the mount prefix and ``root``.
    """
    if not isinstance(value, str) or not value.strip():
        raise BadPath("Path must be a non-empty string", {"path": value})

    raw = value.strip()
    if "\x00" in raw:
        raise BadPath("Path contains a NUL byte", {"path": value})

    if raw.startswith(("http://", "https://")):
        raw = unquote(urlparse(raw).path)

    path = raw.replace("\\", "/")
    if _DRIVE_RE.match(path):
        raise BadPath(f"Absolute path outside the storage root: {value}", {"path": value})

    path = _MULTI_SLASH_RE.sub("/", path)
    path, prefixed = _strip_prefix(path, public_prefix)

    if not prefixed and path.startswith("/"):
        path = _relative_to_root(path, root, original=value)

    segments = [s for s in path.split("/") if s and s != "."]
    for segment in segments:
        if segment == ".." or unquote(segment) == "..":
            raise BadPath(f"Path traversal is not allowed: {value}", {"path": value})

    if not segments:
        raise BadPath(f"Path does not name a file: {value}", {"path": value})

    return "/".join(segments)


def _relative_to_root(path: str, root: Path | str | None, *, original: str) -> str:
    if root is not None:
        root_posix = PurePosixPath(Path(root).resolve().as_posix())
        candidate = PurePosixPath(path)
        if candidate.is_relative_to(root_posix):
            return candidate.relative_to(root_posix).as_posix()
    raise BadPath(f"Absolute path outside the storage root: {original}", {"path": original})


def resolve_absolute(root: Path | str, relative: str) -> Path:
    """Join ``relative`` onto ``root`` and verify it cannot escape.

    Symlinks are resolved before the containment check, so a link inside the
    tree pointing elsewhere is rejected too.
    """
    if ".." in relative.replace("\\", "/").split("/") or "\x00" in relative:
        raise BadPath(f"Path traversal is not allowed: {relative}", {"path": relative})

    base = Path(root).resolve()
    candidate = base / relative.lstrip("/")
    try:
        resolved = candidate.resolve()
    except (OSError, ValueError) as exc:
        raise BadPath(f"Unresolvable path: {relative}", {"path": relative}) from exc

    if resolved == base or not resolved.is_relative_to(base):
        raise BadPath(f"Path escapes the storage root: {relative}", {"path": relative})
    return resolved


def to_web_path(relative: str, public_prefix: str = "/uploads") -> str:
    """Build the public URL path for a root-relative path."""
    prefix = _clean_prefix(public_prefix)
    return _MULTI_SLASH_RE.sub("/", f"{prefix}/{relative.lstrip('/')}")


@dataclass(frozen=True)
class PathResolver:
    """A storage root plus its public mount prefix."""

    root: Path
    public_prefix: str = "/uploads"

    def normalize(self, value: str) -> str:
        return normalize_to_relative(value, public_prefix=self.public_prefix, root=self.root)

    def resolve(self, value: str) -> Path:
        """Normalize then resolve in one step."""
        return resolve_absolute(self.root, self.normalize(value))

    def relative_of(self, absolute: Path) -> str:
        """Root-relative POSIX path of an absolute path inside the root."""
        base = self.root.resolve()
        resolved = absolute.resolve()
        if not resolved.is_relative_to(base):
            raise BadPath(f"Path escapes the storage root: {absolute}", {"path": str(absolute)})
        return resolved.relative_to(base).as_posix()

    def web_path(self, relative: str) -> str:
        return to_web_path(relative, self.public_prefix)
