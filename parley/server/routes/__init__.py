"""Route registration."""

from fastapi import FastAPI


def register_routes(app: FastAPI) -> None:
    """Register all API routes."""
    from parley.server.routes.chat import router as chat_router
    from parley.server.routes.health import router as health_router
    from parley.server.routes.sessions import router as sessions_router

    app.include_router(health_router)
    app.include_router(chat_router, prefix="/api")
    app.include_router(sessions_router, prefix="/api")
