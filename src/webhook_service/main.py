"""aiohttp application entrypoint."""
from __future__ import annotations

from aiohttp import web

from webhook_service.aiohttp_app import add_cors_to_routes, add_healthcheck, create_base_app
from webhook_service.api.router import setup_routes
from webhook_service.logging_config import configure_logging
from webhook_service.services.dependencies import STATE_KEY, AppState, ServiceContainer
from webhook_service.settings import Settings, get_settings


def create_app(
    settings: Settings | None = None,
    *,
    container: ServiceContainer | None = None,
    start_workers: bool = True,
) -> web.Application:
    """Build the admin API application.

    ``container`` lets callers (tests) inject pre-built components; otherwise
    one is built on startup for the configured storage backend. With
    ``start_workers=False`` the worker pool, outbox poller and maintenance
    worker are not started.
    """
    settings = settings or get_settings()
    app, cors = create_base_app(settings)
    state = AppState(container=container)
    app[STATE_KEY] = state

    async def init_components(_app: web.Application) -> None:
        if state.container is None:
            if settings.storage_backend == "memory":
                state.container = ServiceContainer.build_in_memory(settings)
            else:
                state.container = await ServiceContainer.build_postgres(settings)
        if start_workers:
            await state.container.start()

    async def close_components(_app: web.Application) -> None:
        if state.container is not None:
            await state.container.stop()

    add_healthcheck(
        app,
        settings,
        lambda: {"storage": settings.storage_backend, "ready": state.container is not None},
    )
    setup_routes(app)
    app.on_startup.append(init_components)
    app.on_cleanup.append(close_components)
    add_cors_to_routes(app, cors)
    return app


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    web.run_app(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
