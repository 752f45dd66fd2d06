import asyncio
import logging
import sqlite3
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from starlette.middleware.base import BaseHTTPMiddleware

from api.routes.channel import router as channel_router
from api.routes.pieces import router as pieces_router
from api.routes.state import router as state_router
from api.routes.tracks import router as tracks_router
from api.routes.transport import router as transport_router
from core.config import SyncConfig, load_config
from infrastructure.metrics import get_metrics_response
from ingestion.broker import MixBroker
from ingestion.session_store import SessionStore
from ingestion.side_channels import CommandWatcher, EditorMirror, SessionLog

logger = logging.getLogger(__name__)


class CrossOriginMiddleware(BaseHTTPMiddleware):
    """Permissive cross-origin headers on every HTTP response.

    Browsers and local tools on any origin may call the API. Preflight
    ``OPTIONS`` requests are answered here with 204 and never reach a route.
    Starlette's CORSMiddleware only short-circuits requests carrying
    preflight headers, and answers them with 200.
    """

    HEADERS = {
        "Access-Control-Allow-Origin": "*",
        "Access-Control-Allow-Methods": "GET, PUT, POST, DELETE, OPTIONS",
        "Access-Control-Allow-Headers": "Content-Type",
    }

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.method == "OPTIONS":
            response = Response(status_code=204)
        else:
            response = await call_next(request)
        response.headers.update(self.HEADERS)
        return response


async def _persistence_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Persistence failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"error": str(exc)})


def create_app(config: SyncConfig | None = None) -> FastAPI:
    """Build the sync server app.

    Args:
        config: Server configuration. Read from the environment if omitted.
    """
    config = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        store = SessionStore(config.db_path)
        if store.created:
            logger.info("Created session database at %s", config.db_path)

        session_log = SessionLog(config.errors_path, config.debug_path)
        session_log.trim_debug(config.debug_max_bytes, config.debug_keep_lines)

        broker = MixBroker.open(store, artifact_path=config.compiled_path)
        mirror = EditorMirror(config.editor_path, config.editor_poll_seconds, broker.publish)
        await mirror.load()
        commands = CommandWatcher(config.command_path, config.command_poll_seconds, broker.publish)

        app.state.config = config
        app.state.broker = broker
        app.state.editor_mirror = mirror
        app.state.session_log = session_log

        watchers: list[asyncio.Task[None]] = []
        if config.watch_files:
            watchers = [
                asyncio.create_task(mirror.run(), name="editor-mirror"),
                asyncio.create_task(commands.run(), name="command-watcher"),
            ]
        logger.info(
            "Sync server ready on %s:%d (work dir %s)", config.host, config.port, config.work_dir
        )

        yield

        logger.info("Shutting down...")
        for task in watchers:
            task.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)

    app = FastAPI(title="Mix Session Sync", lifespan=lifespan)
    app.add_middleware(CrossOriginMiddleware)
    app.add_exception_handler(sqlite3.Error, _persistence_error)

    app.include_router(tracks_router)
    app.include_router(state_router)
    app.include_router(pieces_router)
    app.include_router(transport_router)
    app.include_router(channel_router)

    @app.get("/health")
    def health() -> dict[str, str]:
        """Return a simple liveness check."""
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics() -> Response:
        """Prometheus metrics endpoint.

        Returns metrics in Prometheus text exposition format.
        """
        body, content_type = get_metrics_response()
        return Response(content=body, media_type=content_type)

    return app


app = create_app()
