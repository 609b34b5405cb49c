"""ASGI application factory for Plume.

Run with ``plume serve`` or any ASGI server pointed at ``plume.asgi:app``.
"""

from __future__ import annotations

import logging

from litestar import Litestar

from plume.config import Settings, get_settings
from plume.controllers.media import MediaController
from plume.lib import observability
from plume.lib.exceptions import EXCEPTION_HANDLERS
from plume.services import MediaServices

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(settings: Settings | None = None, services: MediaServices | None = None) -> Litestar:
    """Create the Litestar app with media services built once at startup."""
    settings = settings or get_settings()
    observability.configure(settings)
    media = services or MediaServices.from_settings(settings)

    async def on_startup(_app: Litestar) -> None:
        """Ensure the storage root and temp area exist."""
        media.ensure_directories()

    async def on_shutdown(_app: Litestar) -> None:
        await media.close()

    app = Litestar(
        on_startup=[on_startup],
        on_shutdown=[on_shutdown],
        route_handlers=[MediaController],
        exception_handlers=EXCEPTION_HANDLERS,
        request_max_body_size=settings.upload.max_request_size,
        debug=settings.debug,
    )
    app.state.media = media
    return app


def create_asgi_app():
    settings = get_settings()
    configure_logging(settings)
    return observability.instrument_app(create_app(settings))


app = create_asgi_app()
