"""Media error taxonomy and the JSON error surface for HTTP callers."""

from __future__ import annotations

import logging
from typing import Any

from litestar import Request, Response
from litestar.exceptions import HTTPException
from litestar.status_codes import HTTP_500_INTERNAL_SERVER_ERROR

from plume.lib import observability

logger = logging.getLogger(__name__)


class MediaError(Exception):
    """Base class for every error raised by the media pipeline.

    Carries a machine-readable ``code``, a human ``message`` and structured
    ``data`` so batch callers can report precisely what went wrong.
    """

    status_code: int = HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "MEDIA_ERROR"

    def __init__(self, message: str, data: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.data: dict[str, Any] = dict(data or {})

    def add_context(self, **context: Any) -> MediaError:
        self.data.update(context)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "data": self.data}


class BadPath(MediaError):
    """Traversal or root-escape attempt. Raised before any side effect."""

    status_code = 400
    code = "BAD_PATH"


class BadRequest(MediaError):
    status_code = 400
    code = "BAD_REQUEST"


class NotFound(MediaError):
    status_code = 404
    code = "NOT_FOUND"

    @property
    def missing_paths(self) -> list[str]:
        return list(self.data.get("missingPaths", []))


class Internal(MediaError):
    status_code = 500
    code = "INTERNAL"


class OperationCancelled(MediaError):
    """A batch was cancelled or ran past its deadline."""

    status_code = 408
    code = "CANCELLED"


class UploadError(BadRequest):
    """Ingress failure attributed to a single multipart field."""

    code = "UPLOAD_ERROR"

    def __init__(
        self,
        message: str,
        field: str | None = None,
        filename: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message, data)
        self.field = field
        self.filename = filename

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["field"] = self.field
        return payload


class FileTypeNotAllowed(UploadError):
    status_code = 415
    code = "FILE_TYPE_NOT_ALLOWED"


class FileSizeExceeded(UploadError):
    status_code = 413
    code = "FILE_SIZE_EXCEEDED"


class FileCountExceeded(UploadError):
    code = "FILE_COUNT_EXCEEDED"


class UnexpectedField(UploadError):
    code = "UNEXPECTED_FIELD"


class CompressionFailed(UploadError):
    status_code = 500
    code = "COMPRESSION_FAILED"


def batch_failure(
    first: MediaError,
    *,
    total: int,
    succeeded: int,
    rolled_back: int,
    failures: list[dict[str, Any]],
) -> MediaError:
    """Rebuild the first failure of a batch with an aggregate summary.

    The error class (and therefore the HTTP status) of the root cause is
    kept; the message and ``data`` describe what happened to its siblings.
    """
    message = (
        f"Batch of {total} failed: {len(failures)} failed, "
        f"{succeeded} succeeded and {rolled_back} artifacts were rolled back. "
        f"First error: {first.message}"
    )
    if isinstance(first, UploadError):
        error: MediaError = type(first)(message, field=first.field, filename=first.filename, data=first.data)
    else:
        error = type(first)(message, data=first.data)
    error.add_context(
        total=total,
        succeededCount=succeeded,
        rolledBackCount=rolled_back,
        failedCount=len(failures),
        failed=failures,
    )
    error.__cause__ = first
    return error


def as_media_error(exc: BaseException) -> MediaError:
    """Coerce unexpected exceptions into ``Internal`` for uniform reporting."""
    if isinstance(exc, MediaError):
        return exc
    return Internal(str(exc) or exc.__class__.__name__)


def media_error_handler(request: Request, exc: MediaError) -> Response:
    """Render pipeline errors as ``{code, message, data}`` JSON."""
    if exc.status_code >= 500:
        if not observability.exception(
            "Media error on {method} {path}", method=request.method, path=request.url.path
        ):
            logger.error(
                "Media error on %s %s: %s", request.method, request.url.path, exc.message,
                exc_info=exc,
            )
    return Response(
        content=exc.to_dict(),
        status_code=exc.status_code,
        media_type="application/json",
    )


def http_exception_handler(request: Request, exc: HTTPException) -> Response:
    """Render framework HTTP errors with the same JSON shape."""
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return Response(
        content={"code": "HTTP_ERROR", "message": detail, "data": {}},
        status_code=exc.status_code,
        media_type="application/json",
    )


def internal_server_error_handler(request: Request, exc: Exception) -> Response:
    """Handle unexpected exceptions."""
    if not observability.exception(
        "Unhandled exception on {method} {path}", method=request.method, path=request.url.path
    ):
        logger.exception("Unhandled exception on %s %s", request.method, request.url.path)

    return Response(
        content={"code": "INTERNAL", "message": "Internal Server Error", "data": {}},
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        media_type="application/json",
    )


EXCEPTION_HANDLERS: dict[type[Exception], Any] = {
    MediaError: media_error_handler,
    HTTPException: http_exception_handler,
    Exception: internal_server_error_handler,
}
