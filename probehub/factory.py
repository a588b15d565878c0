from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from probehub.api.router import api_router
from probehub.core.config import Settings, load_settings
from probehub.core.errors import InvalidDeviceError
from probehub.services.engine import ProbeEngine, load_devices_file

logger = logging.getLogger(__name__)


def _bootstrap(engine: ProbeEngine, settings: Settings) -> None:
    engine.restore()

    if settings.devices_file is not None:
        try:
            devices = load_devices_file(settings.devices_file)
            engine.registry.register(devices)
        except (OSError, ValueError, InvalidDeviceError):
            logger.exception("Could not load devices from %s", settings.devices_file)

    if settings.autostart_polling:
        for device in engine.registry.list():
            engine.scheduler.start_polling(device.id).close()


def create_app(
    settings: Settings | None = None,
    *,
    engine: ProbeEngine | None = None,
) -> FastAPI:
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.settings = settings
        app.state.engine = engine or ProbeEngine.from_settings(settings)
        _bootstrap(app.state.engine, settings)
        logger.info("probehub started (%s)", settings.env)

        yield
        app.state.engine.close()

    docs_enabled = settings.docs_enabled and not settings.is_production
    app = FastAPI(
        title="Probe Hub API",
        version="0.1.0",
        debug=settings.debug,
        docs_url="/docs" if docs_enabled else None,
        redoc_url=None,
        openapi_url="/openapi.json" if docs_enabled else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type"],
    )
    if settings.trusted_hosts:
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.trusted_hosts)

    @app.middleware("http")
    async def security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("Referrer-Policy", "no-referrer")
        return response

    @app.get("/", tags=["meta"])
    def root():
        return {"name": "probehub", "status": "ok"}

    @app.get("/api/v1/health", tags=["meta"])
    def health():
        engine_ = app.state.engine
        return {
            "status": "ok",
            "devices": len(engine_.registry),
            "readings": len(engine_.history),
            "trials": len(engine_.trials),
            "polling": len(engine_.scheduler.active_devices()),
        }

    app.include_router(api_router)
    return app
