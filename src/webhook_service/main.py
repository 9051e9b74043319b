"""aiohttp application entrypoint."""
from __future__ import annotations

from pathlib import Path

from aiohttp import web

from backend_common.db.migrations import create_migration_runner
from backend_common.db.pool import create_pool_hooks
from backend_common.logging_config import configure_logging
from backend_common.middleware.trace import create_trace_middleware

from webhook_service.api.router import setup_routes
from webhook_service.services.dependencies import close_services, init_services
from webhook_service.settings import settings
from webhook_service.webhooks_dispatcher import start_webhook_session, stop_webhook_session
from webhook_service.workers import start_background_worker, stop_background_worker

configure_logging(settings.log_level)

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
MIGRATION_PATHS = [
    PROJECT_ROOT / "migrations",
    Path("/app/migrations"),
]


async def healthcheck(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "service": settings.app_name, "env": settings.env})


def create_app() -> web.Application:
    app = web.Application()
    app.middlewares.append(create_trace_middleware(settings.app_name))

    app.router.add_get("/health", healthcheck)
    setup_routes(app)

    init_pool, close_pool = create_pool_hooks(settings)
    app.on_startup.append(init_pool)
    if settings.apply_migrations_on_startup:
        app.on_startup.append(create_migration_runner(settings, MIGRATION_PATHS))
    app.on_startup.append(start_webhook_session)
    app.on_startup.append(init_services)
    app.on_startup.append(start_background_worker)

    # cleanup runs in registration order
    app.on_cleanup.append(stop_background_worker)
    app.on_cleanup.append(close_services)
    app.on_cleanup.append(stop_webhook_session)
    app.on_cleanup.append(close_pool)
    return app


def main() -> None:
    web.run_app(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
