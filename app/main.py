import asyncio
import logging
from typing import Optional

from fastapi import FastAPI

from app.api.routes import router as api_router
from app.config import Settings, get_settings
from app.feed.transport import Transport
from app.state import build_state


def create_app(settings: Optional[Settings] = None, transport: Optional[Transport] = None) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    state = build_state(settings, transport)

    app = FastAPI(title="Live Bar Feed API", version="0.1.0")
    app.state.feed = state
    app.include_router(api_router)

    @app.on_event("startup")
    async def _startup():
        # WS transport (reconnects forever; router resubscribes on each connect)
        run = getattr(state.transport, "run", None)
        if callable(run):
            state.task = asyncio.create_task(run())

    @app.on_event("shutdown")
    async def _shutdown():
        close = getattr(state.transport, "close", None)
        if callable(close):
            close()
        if state.task is not None:
            state.task.cancel()

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "app_env": settings.app_env,
            "transport": state.transport.__class__.__name__,
            "connected": state.transport.connected,
            "streams": [str(k) for k in state.router.keys()],
            "router": state.router.stats(),
        }

    return app


app = create_app()
