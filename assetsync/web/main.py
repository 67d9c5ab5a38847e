from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from assetsync.core.config import load_config
from assetsync.store.db import init_db
from assetsync.web.api import router as api_router, start_scheduler, stop_scheduler


def build_app() -> FastAPI:
    cfg = load_config()
    init_db(cfg.database.path)

    @asynccontextmanager
    async def lifespan(_api: FastAPI):
        start_scheduler()
        try:
            yield
        finally:
            await stop_scheduler()

    api = FastAPI(title="assetsync", version="0.1.0", lifespan=lifespan)
    api.include_router(api_router)
    return api


def main():
    import uvicorn

    cfg = load_config()

    from assetsync.core.logging_setup import setup_logging

    setup_logging(cfg.logging.level, cfg.logging.file)

    uvicorn.run(
        build_app(),
        host=cfg.web_bind_host,
        port=cfg.web_port,
        log_level=cfg.logging.level.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    main()
