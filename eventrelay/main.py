"""FastAPI application entry point."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from eventrelay.api import events, subscriptions
from eventrelay.components import Components, build_components
from eventrelay.config import get_settings
from eventrelay.errors import RegistryError
from eventrelay.logging_config import configure_logging

settings = get_settings()


def create_app(components: Optional[Components] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = getattr(app.state, "components", None) is None
        if owned:
            configure_logging(settings.log_level)
            app.state.components = await build_components(settings)
        yield
        if owned:
            await app.state.components.aclose()
            app.state.components = None

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Signed webhook delivery for marketplace events",
        lifespan=lifespan,
    )
    app.state.components = components

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RegistryError)
    async def registry_unavailable(request: Request, exc: RegistryError):
        return JSONResponse(status_code=503, content={"detail": "Subscription store unavailable"})

    # Register routers
    app.include_router(subscriptions.router, prefix="/api/v1")
    app.include_router(events.router, prefix="/api/v1")

    @app.get("/health")
    async def health():
        return {"status": "ok", "app": settings.app_name}

    return app


app = create_app()
