"""
FastAPI application entry point for the inventory management backend.

Run with:
    python -m backend.app
or
    uvicorn backend.app:app --port 3001
"""

from __future__ import annotations

import logging
from typing import Optional

import uvicorn
from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware import Middleware

from backend.config import Settings, get_settings
from backend.middleware import (
    AccessLogMiddleware,
    CrossOriginResourcePolicyMiddleware,
    JsonBodyParserMiddleware,
    SecurityHeadersMiddleware,
    UrlEncodedBodyParserMiddleware,
)
from backend.routes import router as dashboard_routes

logger = logging.getLogger(__name__)


def build_middleware(settings: Settings) -> list[Middleware]:
    """
    Middleware in request order: each entry wraps everything after it, so
    the body is parsed before any handler runs and security headers are in
    place before any response leaves.
    """
    return [
        Middleware(JsonBodyParserMiddleware, limit=settings.json_body_limit),
        Middleware(SecurityHeadersMiddleware),
        Middleware(CrossOriginResourcePolicyMiddleware, policy="cross-origin"),
        Middleware(AccessLogMiddleware),
        Middleware(
            UrlEncodedBodyParserMiddleware,
            extended=False,
            limit=settings.urlencoded_body_limit,
        ),
        Middleware(
            CORSMiddleware,
            allow_origins=settings.cors_origin_list,
            allow_methods=["*"],
            allow_headers=["*"],
        ),
    ]


def create_app(
    settings: Optional[Settings] = None,
    dashboard_router: Optional[APIRouter] = None,
) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title="Inventory Management Backend",
        version="0.1.0",
        middleware=build_middleware(settings),
    )
    app.include_router(
        dashboard_router or dashboard_routes, prefix=settings.dashboard_prefix
    )
    return app


app = create_app()


class AppServer(uvicorn.Server):
    """uvicorn server that reports the bound port once listening."""

    async def startup(self, sockets=None) -> None:
        await super().startup(sockets=sockets)
        if self.started:
            logger.info("Server running on port %s", self.config.port)


def main(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper())
    config = uvicorn.Config(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=False,
    )
    AppServer(config).run()


if __name__ == "__main__":
    main()
