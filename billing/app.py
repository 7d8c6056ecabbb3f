"""FastAPI application factory — entry point for the billing API."""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from billing.config import get_settings
from billing.routers import admin, subscriptions, webhooks
from billing.utils import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    # Auto-create tables for SQLite (dev mode); PostgreSQL uses Alembic
    from billing.db.session import engine
    from billing.models import Base

    settings = get_settings()
    setup_logging(settings.debug)
    if settings.database_url.startswith("sqlite"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    yield

    await engine.dispose()


def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
    )
    app.state.settings = settings

    @app.get("/health", include_in_schema=False)
    async def health():
        return {"status": "ok"}

    # --- Routers ---
    app.include_router(subscriptions.router)
    app.include_router(admin.router)
    app.include_router(webhooks.router)

    return app


app = create_app()
