"""MarketSnap sync FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketsnap import __version__
from marketsnap.config import settings
from marketsnap.services import SyncRuntime

logger = logging.getLogger(__name__)


def _make_lifespan(runtime: SyncRuntime | None):
    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        """Startup / shutdown lifecycle."""
        # === STARTUP ===
        _setup_logging()

        for d in (settings.data_dir, settings.quarantine_dir, settings.state_dir):
            Path(d).mkdir(parents=True, exist_ok=True)

        rt = runtime or SyncRuntime.build(settings)
        await rt.start()
        app.state.runtime = rt
        logger.info(
            "MarketSnap sync v%s started — listening on %s:%s",
            __version__, settings.host, settings.port,
        )

        try:
            yield
        finally:
            # === SHUTDOWN ===
            await rt.shutdown()
            logger.info("MarketSnap sync shutting down")

    return _lifespan


def _setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    # Noisy third-party loggers down to WARNING
    for noisy in ("aiosqlite", "apscheduler", "httpx", "httpcore"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def create_app(runtime: SyncRuntime | None = None) -> FastAPI:
    """Application factory. Pass ``runtime`` to serve a pre-built one."""
    from marketsnap.api.routes import api_router

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        debug=settings.debug,
        lifespan=_make_lifespan(runtime),
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix=settings.api_prefix)
    if runtime is not None:
        app.state.runtime = runtime
    return app


app = create_app()


def run(**kwargs: Any) -> None:
    import uvicorn

    uvicorn.run(
        "marketsnap.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
        **kwargs,
    )


if __name__ == "__main__":
    run()
