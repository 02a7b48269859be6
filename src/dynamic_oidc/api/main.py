from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from dynamic_oidc import __version__
from dynamic_oidc.api.auth.router import router as auth_router
from dynamic_oidc.api.context import OIDCContext, build_context
from dynamic_oidc.config import OIDCSettings
from dynamic_oidc.db import close_engine, get_session

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[OIDCSettings] = None,
    context: Optional[OIDCContext] = None,
) -> FastAPI:
    if context is None:
        context = build_context(settings or OIDCSettings.from_env(), get_session)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Dynamic OIDC login %s",
            "enabled" if context.settings.enabled else "disabled",
        )
        yield
        await close_engine()

    app = FastAPI(
        title="Dynamic OIDC",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.oidc = context
    app.include_router(auth_router)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
