from contextlib import asynccontextmanager

import socketio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from feedrelay.api import health, realtime
from feedrelay.core.config import settings, logger
from feedrelay.core.logging import configure_logging
from feedrelay.realtime.socket import RealtimeHub, create_realtime


def create_app(hub: RealtimeHub = None) -> FastAPI:
    """Build the HTTP app around a realtime hub (one per process)."""
    configure_logging()
    hub = hub or create_realtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Realtime hub started (fan-out=%s, redis=%s)",
                    settings.RELAY_FANOUT, bool(settings.REDIS_URL))
        yield
        await hub.shutdown()

    app = FastAPI(
        title="feedrelay",
        description="Real-time event relay and call signaling for the social feed",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.realtime = hub

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health.router, prefix="", tags=["Health"])
    app.include_router(realtime.router, prefix="/api/realtime", tags=["Realtime"])
    return app


app = create_app()

# Socket.IO in front, everything else falls through to FastAPI
asgi_app = socketio.ASGIApp(app.state.realtime.sio, other_asgi_app=app, socketio_path=settings.SOCKETIO_PATH)
