from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from genflow.apps.api.errors import (
    genflow_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from genflow.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from genflow.apps.api.routes.credentials import router as credentials_router
from genflow.apps.api.routes.credits import router as credits_router
from genflow.apps.api.routes.health import router as health_router
from genflow.apps.api.routes.workflows import router as workflows_router
from genflow.core.config import get_settings
from genflow.core.container import Services, build_services
from genflow.core.errors import GenflowError
from genflow.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    """Build the API app.

    Passing ``services`` wires a pre-built container (tests); otherwise the
    container is built at startup and closed at shutdown.
    """
    settings = services.settings if services is not None else get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = None
        if getattr(app.state, "services", None) is None:
            owned = build_services(settings)
            app.state.services = owned
        try:
            yield
        finally:
            if owned is not None:
                await owned.aclose()

    app = FastAPI(title="Genflow API", version=API_VERSION, lifespan=lifespan)
    app.state.services = services

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    app.add_exception_handler(GenflowError, genflow_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(workflows_router, prefix=f"/{API_VERSION}")
    app.include_router(credits_router, prefix=f"/{API_VERSION}")
    app.include_router(credentials_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
