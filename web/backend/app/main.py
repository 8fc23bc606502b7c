"""FastAPI application for the modsync authority.

Provides REST API endpoints wrapping the modsync package for:
- Remote installations (status, manifest, config, file download, bootstrap)
- Administration (staged edits, bundle staging, diff, apply)

Run with ``modsync serve`` or ``uvicorn web.backend.app.main:create_app --factory``.
"""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from modsync import __version__
from modsync.authority import Authority
from modsync.config import load_settings
from modsync.observability import configure_logging

from web.backend.app.routers import admin, sync


def create_app(authority: Authority | None = None) -> FastAPI:
    """Build the application around *authority*.

    Without an authority, settings are read from the environment and the
    startup sequence runs before the app is returned.
    """
    if authority is None:
        settings = load_settings()
        configure_logging(settings)
        authority = Authority(settings)
        authority.startup()

    app = FastAPI(
        title="modsync authority",
        description=(
            "Distributes file bundles to remote installations and keeps them "
            "in line with the authority's desired state."
        ),
        version=__version__,
    )
    app.state.authority = authority

    # -----------------------------------------------------------------------
    # CORS middleware (the admin UI may be served from another origin)
    # -----------------------------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Include routers
    # -----------------------------------------------------------------------
    app.include_router(sync.router)
    app.include_router(admin.router)

    @app.get("/", tags=["meta"])
    async def root():
        """Return basic API information."""
        return {
            "name": "modsync authority",
            "version": __version__,
            "docs": "/docs",
            "openapi": "/openapi.json",
        }

    return app
