"""Media endpoints: ingress, validation, promotion, remote publication."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from litestar import Controller, Request, get, post
from litestar.response import Response
from pydantic import BaseModel, Field

from plume.lib.concurrency import CancelContext
from plume.lib.exceptions import MediaError
from plume.services import MediaServices

logger = logging.getLogger(__name__)


class ValidateRequest(BaseModel):
    paths: list[str] = Field(min_length=1)


class PromoteItem(BaseModel):
    path: str
    scene: str


class PromoteRequest(BaseModel):
    items: list[PromoteItem] = Field(min_length=1)
    delete_temp: bool = False


class RemoteRequest(BaseModel):
    paths: list[str] = Field(min_length=1)
    scene: str
    strict: bool = True
    delete_sources: bool = False
    concurrency: int | None = Field(default=None, ge=1)


def _services(request: Request) -> MediaServices:
    return request.app.state.media


async def cancel_on_disconnect(request: Request, context: CancelContext) -> None:
    """Cancel ``context`` once the ASGI server reports the client has gone.

    Only valid after the request body has been read.
    """
    while True:
        message = await request.receive()
        if message["type"] == "http.disconnect":
            logger.info("Client disconnected from %s %s", request.method, request.url.path)
            context.cancel("client disconnected")
            return


@asynccontextmanager
async def batch_context(request: Request, services: MediaServices) -> AsyncIterator[CancelContext]:
    """A per-request context with the configured deadline, cancelled on disconnect."""
    context = CancelContext(timeout=services.settings.upload.batch_timeout)
    watcher = asyncio.create_task(cancel_on_disconnect(request, context))
    try:
        yield context
    finally:
        watcher.cancel()


class MediaController(Controller):
    path = "/media"

    @post("/uploads/{scene:str}")
    async def upload(self, request: Request, scene: str, compress: str | None = None) -> Response:
        """Accept multipart files into the temp store for ``scene``.

        ``?compress=off`` stores images exactly as sent.
        """
        services = _services(request)
        files = await services.ingress.handle(request, scene, compress=compress != "off")
        return Response(
            content={"scene": scene, "files": [f.to_dict() for f in files]},
            status_code=201,
        )

    @post("/validate")
    async def validate(self, request: Request, data: ValidateRequest) -> Response:
        services = _services(request)
        async with batch_context(request, services) as context:
            await services.validator.validate_exists_batch(data.paths, context=context)
        checked = {p.strip() for p in data.paths if p.strip()}
        return Response(content={"valid": True, "count": len(checked)}, status_code=200)

    @post("/promote")
    async def promote(self, request: Request, data: PromoteRequest) -> Response:
        """Publish temp files into their scene directories, all or nothing.

        With ``delete_temp`` the temp files are removed afterwards; cleanup
        problems are reported in the response, never as an error, because
        the assets are already published.
        """
        services = _services(request)
        async with batch_context(request, services) as context:
            assets = await services.promotion.promote_batch(
                [(item.path, item.scene) for item in data.items],
                context=context,
            )

        content: dict = {"assets": [asset.to_dict() for asset in assets]}
        if data.delete_temp:
            content["tempCleanup"] = await _delete_temp(services, [item.path for item in data.items])
        return Response(content=content, status_code=200)

    @post("/remote")
    async def remote(self, request: Request, data: RemoteRequest) -> Response:
        services = _services(request)
        async with batch_context(request, services) as context:
            results = await services.remote.upload_batch(
                data.paths,
                data.scene,
                strict=data.strict,
                concurrency=data.concurrency,
                delete_sources=data.delete_sources,
                context=context,
            )
        return Response(
            content={
                "scene": data.scene,
                "succeeded": sum(1 for r in results if r.ok),
                "failed": sum(1 for r in results if not r.ok),
                "results": [r.to_dict() for r in results],
            },
            status_code=200,
        )

    @get("/thumbnail")
    async def thumbnail(self, request: Request, path: str) -> Response:
        """Thumbnail web path for ``path``, or ``path`` when none exists."""
        services = _services(request)
        return Response(
            content={"path": path, "thumbnail": await services.thumbnails.thumbnail_url_for(path)},
            status_code=200,
        )


async def _delete_temp(services: MediaServices, paths: list[str]) -> dict:
    try:
        report = await services.promotion.delete_assets(paths)
    except MediaError as exc:
        logger.warning("Temp cleanup after promotion failed: %s", exc.message)
        return {"deleted": 0, "failed": paths}
    return {"deleted": report.undone_count, "failed": [action.target for action, _ in report.failed]}
