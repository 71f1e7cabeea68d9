import logging
from contextlib import asynccontextmanager
from typing import Any

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from appbuilder.api import credits, generation, sandbox, stream
from appbuilder.config import Settings
from appbuilder.services import Services, build_services


# Basic logger for server diagnostics (inherits uvicorn handlers)
logger = logging.getLogger("appbuilder.app")
if not logger.handlers:
    logger.setLevel(logging.INFO)


def create_app(services: Services | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        svc: Services = app.state.services
        await svc.orchestrator.drain()
        if await svc.manager.kill():
            logger.info("sandbox released on shutdown")

    app = FastAPI(lifespan=lifespan)
    app.state.services = services or build_services(Settings.from_env())

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(generation.router)
    app.include_router(stream.router)
    app.include_router(sandbox.router)
    app.include_router(credits.router)

    @app.get("/api/models")
    async def list_models() -> dict[str, Any]:
        """Return the models allowed by this server.

        If a gateway key is configured, intersect the allowlist with the
        gateway's advertised models. Otherwise, return the allowlist as-is.
        """
        settings = app.state.services.settings
        result = list(settings.allowed_models)
        if not settings.model_api_key:
            return {"models": result}

        url = f"{settings.model_base_url.rstrip('/')}/models"
        headers = {"Authorization": f"Bearer {settings.model_api_key}"}
        try:
            async with httpx.AsyncClient(timeout=15.0) as client:
                resp = await client.get(url, headers=headers)
                resp.raise_for_status()
                data = resp.json()
                available_ids = {str(m.get("id")) for m in (data.get("data") or []) if m.get("id")}
                intersected = [m for m in settings.allowed_models if m in available_ids]
                return {"models": intersected or result}
        except httpx.HTTPError:
            # On any error, just fall back to our allowlist
            return {"models": result}

    @app.get("/")
    def read_root():
        return {"Hello": "App Builder"}

    return app
