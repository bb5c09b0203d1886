from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from time import perf_counter

from fastapi import FastAPI, Request
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response

from estate_chat.api.v1.router import api_router
from estate_chat.core.errors import add_exception_handlers, success_response
from estate_chat.core.logging import configure_logging
from estate_chat.core.settings import get_settings
import estate_chat.db.session as db_session
from estate_chat.realtime import ConnectionManager, RealtimeDispatcher, RealtimePublisher

settings = get_settings()
configure_logging(debug=settings.debug)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup started")
    db_session.init_db()
    app.state.connection_manager = ConnectionManager(
        max_subscriptions_per_connection=settings.ws_max_subscriptions_per_connection
    )
    app.state.realtime_publisher = RealtimePublisher(app.state.connection_manager)
    app.state.realtime_dispatcher = RealtimeDispatcher(
        publisher=app.state.realtime_publisher,
        session_factory=db_session.open_session,
        poll_interval_sec=settings.realtime_dispatcher_poll_ms / 1000.0,
        batch_size=settings.realtime_dispatcher_batch_size,
    )
    if settings.realtime_dispatcher_enabled:
        await app.state.realtime_dispatcher.start()
    logger.info("Application startup completed")
    yield
    await app.state.realtime_dispatcher.stop()
    logger.info("Application shutdown completed")


def create_app() -> FastAPI:
    logger.debug("Creating FastAPI app with API prefix: %s", settings.api_v1_prefix)
    app = FastAPI(
        title=settings.app_name,
        lifespan=lifespan,
        middleware=[
            Middleware(
                CORSMiddleware,
                allow_origins=settings.cors_origins,
                allow_credentials=True,
                allow_methods=["*"],
                allow_headers=["*"],
            )
        ],
    )

    if settings.debug:
        @app.middleware("http")
        async def request_debug_logger(request: Request, call_next) -> Response:
            start = perf_counter()
            viewer_id = request.headers.get("x-viewer-id", "-")
            response = await call_next(request)
            logger.debug(
                "HTTP request method=%s path=%s viewer_id=%s status=%s duration_ms=%.2f",
                request.method,
                request.url.path,
                viewer_id,
                response.status_code,
                (perf_counter() - start) * 1000,
            )
            return response

    add_exception_handlers(app)
    app.include_router(api_router, prefix=settings.api_v1_prefix)

    @app.get("/health")
    def health_check():
        return success_response({"ok": True})

    return app


app = create_app()
