import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from buddylynk_backend.api.messages import limiter, messages_router
from buddylynk_backend.api.presence import presence_router
from buddylynk_backend.api.system import system_router
from buddylynk_backend.auth import get_current_user_id
from buddylynk_backend.database import init_db
from buddylynk_backend.exceptions import register_exception_handlers
from buddylynk_backend.redis_cache import close_redis_client, get_redis_client
from buddylynk_backend.settings import settings
from buddylynk_backend.websocket import ws_router
from buddylynk_backend.websocket.services import RealtimeServices, build_realtime

logger = logging.getLogger(__name__)


def create_app(realtime: Optional[RealtimeServices] = None, create_tables: bool = True) -> FastAPI:
    """
    Build the application.

    Args:
        realtime: Pre-built realtime services (tests pass a local bus);
            built from the shared Redis client when omitted
        create_tables: Create missing tables on startup
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if create_tables:
            init_db()

        owns_redis = realtime is None
        services = realtime or build_realtime(await get_redis_client())
        app.state.realtime = services

        await services.start()
        logger.info(f"Realtime services started on {settings.SERVER_ID}")

        try:
            yield
        finally:
            await services.stop()
            if owns_redis:
                await close_redis_client()
            logger.info(f"Realtime services stopped on {settings.SERVER_ID}")

    app = FastAPI(lifespan=lifespan, title="Buddylynk realtime")
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Register custom exception handlers for structured error responses
    register_exception_handlers(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(ws_router, tags=["websocket"])

    app.include_router(
        presence_router,
        prefix="/users",
        tags=["presence"],
    )

    app.include_router(
        messages_router,
        prefix="/messages",
        tags=["messages"],
    )

    app.include_router(
        system_router,
        prefix="/system",
        tags=["system"],
        dependencies=[Depends(get_current_user_id)]
    )

    @app.head("/", status_code=204)
    def get_status_head():
        return

    return app


app = create_app()
