"""FastAPI application factory."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from .. import __version__
from ..session.connection import ConnectionManager
from ..session.facade import GatewayFacade
from .routes import router


def create_app(facade: GatewayFacade, manager: Optional[ConnectionManager] = None) -> FastAPI:
    """Build the HTTP app around an already-wired facade.

    When a manager is given, the session is started/stopped with the app.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manager is not None:
            await manager.start()
        try:
            yield
        finally:
            if manager is not None:
                await manager.stop()

    app = FastAPI(title="wagate", version=__version__, lifespan=lifespan)
    app.state.facade = facade
    app.include_router(router)
    return app
