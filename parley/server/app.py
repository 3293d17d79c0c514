"""FastAPI application factory."""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from parley.server.routes import register_routes


def create_app(cors_origins: list[str] | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        from parley.server.dependencies import reset_engine

        reset_engine()

    app = FastAPI(
        title="parley",
        description="Streaming multi-provider chat sessions over HTTP",
        lifespan=lifespan,
    )

    origins = cors_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-parley-session-id"],
    )

    register_routes(app)
    return app
