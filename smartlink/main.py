import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse
from sqlalchemy import text

from smartlink.config import settings
from smartlink.db.base import engine, init_db
from smartlink.pipeline.bus import InlineEventPublisher, TemporalEventPublisher
from smartlink.pipeline.runtime import build_runtime
from smartlink.routers import links, postbacks, workflow_runs
from smartlink.temporal.client import get_temporal_client

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _app_lifespan(app: FastAPI) -> AsyncIterator[None]:
    init_db()
    runtime = build_runtime()
    app.state.runtime = runtime
    inline_publisher: InlineEventPublisher | None = None
    if settings.EVENT_BUS_BACKEND == "temporal":
        app.state.event_publisher = TemporalEventPublisher(get_temporal_client)
    else:
        inline_publisher = InlineEventPublisher(runtime.engine)
        app.state.event_publisher = inline_publisher
        inline_publisher.start_sweeper(settings.RUN_SWEEP_INTERVAL_SECONDS)
    try:
        yield
    finally:
        if inline_publisher is not None:
            await inline_publisher.stop_sweeper()
            await inline_publisher.drain()
        await runtime.close()


def create_app() -> FastAPI:
    app = FastAPI(
        title="Smart Link Attribution API",
        default_response_class=ORJSONResponse,
        lifespan=_app_lifespan,
    )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(_request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("Unhandled server exception", exc_info=exc)
        return ORJSONResponse(status_code=500, content={"detail": "Internal server error."})

    @app.get("/health")
    async def health() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/health/db")
    def health_db() -> dict[str, str]:
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
            return {"db": "ok"}
        except Exception as exc:  # pragma: no cover - simple runtime check
            return {"db": f"error: {exc}"}

    app.include_router(links.router)
    app.include_router(postbacks.router)
    app.include_router(workflow_runs.router)

    return app


app = create_app()
