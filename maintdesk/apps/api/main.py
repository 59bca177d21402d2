from __future__ import annotations

import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.openapi.utils import get_openapi
from starlette.exceptions import HTTPException as StarletteHTTPException

from maintdesk.apps.api.errors import (
    http_exception_handler,
    maintdesk_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from maintdesk.apps.api.response import API_VERSION, REQUEST_ID_HEADER
from maintdesk.apps.api.routes.billing import router as billing_router
from maintdesk.apps.api.routes.health import router as health_router
from maintdesk.apps.api.routes.organizations import router as organizations_router
from maintdesk.apps.api.routes.resources import router as resources_router
from maintdesk.apps.api.routes.root import router as root_router
from maintdesk.apps.api.routes.templates import router as templates_router
from maintdesk.apps.api.routes.tickets import router as tickets_router
from maintdesk.core.config import get_settings
from maintdesk.core.errors import MaintdeskError
from maintdesk.core.logging import configure_logging


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(title="Maintdesk API", openapi_url=f"/{API_VERSION}/openapi.json", docs_url=f"/{API_VERSION}/docs")

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.debug(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
        )
        response.headers.setdefault(REQUEST_ID_HEADER, request_id)
        return response

    @app.exception_handler(MaintdeskError)
    async def _maintdesk_exception_handler(request: Request, exc: MaintdeskError):
        return await maintdesk_exception_handler(request, exc)

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    prefix = f"/{API_VERSION}"
    app.include_router(health_router, prefix=prefix)
    app.include_router(organizations_router, prefix=prefix)
    app.include_router(resources_router, prefix=prefix)
    app.include_router(templates_router, prefix=prefix)
    app.include_router(tickets_router, prefix=prefix)
    # Providers call this unauthenticated; the per-provider signature is the credential.
    app.include_router(billing_router, prefix=prefix)
    app.include_router(root_router, prefix=prefix)

    def custom_openapi() -> dict:
        # Document the gateway identity headers every tenant route expects.
        if app.openapi_schema:
            return app.openapi_schema
        schema = get_openapi(title="Maintdesk API", version=API_VERSION, routes=app.routes)
        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes["GatewayUser"] = {"type": "apiKey", "in": "header", "name": "X-User-Id"}
        security_schemes["GatewayRoot"] = {"type": "apiKey", "in": "header", "name": "X-Root"}
        public_prefixes = (f"{prefix}/health", f"{prefix}/billing/")
        for path, operations in schema.get("paths", {}).items():
            if path.startswith(public_prefixes):
                continue
            security = [{"GatewayRoot": []}] if path.startswith(f"{prefix}/root/") else [{"GatewayUser": []}]
            for operation in operations.values():
                operation.setdefault("security", security)
        app.openapi_schema = schema
        return app.openapi_schema

    app.openapi = custom_openapi
    logger.info("api_created app_name=%s", settings.app_name)
    return app


app = create_app()
