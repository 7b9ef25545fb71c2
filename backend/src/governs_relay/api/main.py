"""FastAPI application entry point."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from governs_relay.core.config import Settings, settings as default_settings
from governs_relay.core.exceptions import RelayError
from governs_relay.relay.runtime import RelayRuntime

logger = structlog.get_logger()


def create_app(settings: Settings | None = None, runtime: RelayRuntime | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    When ``runtime`` is given (tests) it is attached immediately and its
    lifecycle is left to the caller; otherwise the lifespan builds, starts
    and stops one.
    """
    settings = settings or (runtime.settings if runtime is not None else default_settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan: startup and shutdown hooks."""
        if runtime is not None:
            yield
            return
        owned = RelayRuntime.build(settings)
        app.state.runtime = owned
        await owned.start()
        try:
            yield
        finally:
            await owned.stop()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime

    # -- Exception handlers --
    @app.exception_handler(RelayError)
    async def relay_error_handler(_request: Request, exc: RelayError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "code": exc.code,
                "message": exc.message,
                "detail": exc.detail,
            },
        )

    # -- Routes --
    from governs_relay.api.routes.events import router as events_router
    from governs_relay.api.routes.health import router as health_router
    from governs_relay.api.routes.relay import router as relay_router

    app.include_router(health_router)
    app.include_router(relay_router)
    app.include_router(events_router)

    return app


app = create_app()
