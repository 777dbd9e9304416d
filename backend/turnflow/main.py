from __future__ import annotations

from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from turnflow.api import chat as chat_api
from turnflow.api import embeddings as embeddings_api
from turnflow.api import image as image_api
from turnflow.core.config import get_settings
from turnflow.core.logging import setup_logging
from turnflow.db.base import create_engine, create_sessionmaker, init_db
from turnflow.memory.local import LocalMemoryStore
from turnflow.services.component_factory import ComponentFactory


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    settings = get_settings()
    setup_logging(settings.log_level)

    engine = create_engine(settings.db_url)
    sessionmaker = create_sessionmaker(engine)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_db(engine)
        yield
        await engine.dispose()

    app = FastAPI(title="turnflow", lifespan=lifespan)
    app.state.engine = engine
    app.state.sessionmaker = sessionmaker
    app.state.local_memory_store = LocalMemoryStore()
    app.state.component_factory = ComponentFactory(
        sessionmaker, settings, local_store=app.state.local_memory_store
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_api.router)
    app.include_router(image_api.router)
    app.include_router(embeddings_api.router)

    return app


def run() -> None:
    """Serve the API with uvicorn using APP_HOST / APP_PORT."""

    settings = get_settings()
    uvicorn.run(
        "turnflow.main:create_app",
        factory=True,
        host=settings.app_host,
        port=settings.app_port,
        log_level=settings.log_level.lower(),
    )
