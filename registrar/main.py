from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from registrar.api.v1 import get_api_router
from registrar.core.config import Settings, get_settings
from registrar.core.db import create_engine, create_schema, create_session_factory
from registrar.core.logging import configure_logging, get_logger, level_from_name
from registrar.services.pipeline import build_pipeline


logger = get_logger(component="app")


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(level=level_from_name(settings.log_level))
    engine = create_engine(settings)
    session_factory = create_session_factory(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.auto_create_schema:
            await create_schema(engine)
        pipeline = build_pipeline(settings, session_factory)
        app.state.settings = settings
        app.state.engine = engine
        app.state.session_factory = session_factory
        app.state.pipeline = pipeline
        logger.info(
            "app_started",
            storage_backend=settings.storage_backend,
            classifier_backend=settings.classifier_backend,
            pool_size=settings.pool_size,
        )
        try:
            yield
        finally:
            await pipeline.aclose()
            await engine.dispose()
            logger.info("app_stopped")

    app = FastAPI(
        title=settings.app_name,
        version=settings.version,
        lifespan=lifespan,
        openapi_url="/openapi.json",
        docs_url="/docs",
    )

    app.include_router(get_api_router())
    if settings.storage_backend == "local":
        app.mount("/media", StaticFiles(directory=settings.local_storage_base_path, check_dir=False), name="media")
    return app


app = create_app()


__all__ = ["app", "create_app"]
