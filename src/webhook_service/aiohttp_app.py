"""aiohttp application factory: trace middleware, CORS, health check."""
from __future__ import annotations

from typing import Any, Callable, Mapping

import aiohttp_cors
from aiohttp import web

from webhook_service.middleware.trace import REQUEST_ID_HEADER, TRACE_ID_HEADER, create_trace_middleware
from webhook_service.settings import Settings

CORS_HEADERS = ("Accept", "Content-Type", "Authorization", TRACE_ID_HEADER, REQUEST_ID_HEADER)
CORS_METHODS = ("GET", "POST", "PATCH", "DELETE", "OPTIONS")

HealthDetails = Callable[[], Mapping[str, Any]]


def create_base_app(settings: Settings) -> tuple[web.Application, aiohttp_cors.CorsConfig]:
    app = web.Application()
    app.middlewares.append(create_trace_middleware(settings.app_name))
    options = aiohttp_cors.ResourceOptions(
        allow_credentials=True,
        expose_headers=(TRACE_ID_HEADER, REQUEST_ID_HEADER),
        allow_headers=CORS_HEADERS,
        allow_methods=CORS_METHODS,
    )
    cors = aiohttp_cors.setup(app, defaults={origin: options for origin in settings.cors_allowed_origins})
    return app, cors


def add_healthcheck(app: web.Application, settings: Settings, details: HealthDetails | None = None) -> None:
    """``GET /health``; ``details`` adds live fields such as the storage backend."""

    async def healthcheck(_request: web.Request) -> web.Response:
        payload: dict[str, Any] = {"status": "ok", "service": settings.app_name, "env": settings.env}
        if details is not None:
            payload.update(details())
        return web.json_response(payload)

    app.router.add_get("/health", healthcheck)


def add_cors_to_routes(app: web.Application, cors: aiohttp_cors.CorsConfig) -> None:
    """Call last, after every route is registered."""
    for route in list(app.router.routes()):
        cors.add(route)
