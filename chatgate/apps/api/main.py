from __future__ import annotations

import logging
import time

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from chatgate.apps.api.errors import (
    chatgate_error_handler,
    http_exception_handler,
    starlette_http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
    workspace_predicate_exception_handler,
)
from chatgate.apps.api.response import API_VERSION, get_request_id
from chatgate.apps.api.routes.account import router as account_router
from chatgate.apps.api.routes.admin import router as admin_router
from chatgate.apps.api.routes.chat import router as chat_router
from chatgate.apps.api.routes.health import router as health_router
from chatgate.apps.api.routes.knowledge import router as knowledge_router
from chatgate.apps.api.routes.payments import router as payments_router
from chatgate.apps.api.routes.settings import router as settings_router
from chatgate.apps.api.routes.subscription import router as subscription_router
from chatgate.apps.api.routes.usage import router as usage_router
from chatgate.core.config import get_settings
from chatgate.core.errors import ChatGateError
from chatgate.core.logging import configure_logging
from chatgate.persistence.guards import WorkspacePredicateError


logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    configure_logging()
    app = FastAPI(title="chatgate API", version=API_VERSION)

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        request_id = get_request_id(request)
        start = time.monotonic()
        response = await call_next(request)
        latency_ms = (time.monotonic() - start) * 1000.0
        logger.info(
            "request_completed method=%s path=%s status=%s latency_ms=%.1f request_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            latency_ms,
            request_id,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    app.add_exception_handler(ChatGateError, chatgate_error_handler)
    app.add_exception_handler(WorkspacePredicateError, workspace_predicate_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(StarletteHTTPException, starlette_http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # All routes are versioned; there are no legacy aliases.
    for router in (
        health_router,
        account_router,
        subscription_router,
        payments_router,
        chat_router,
        knowledge_router,
        settings_router,
        usage_router,
        admin_router,
    ):
        app.include_router(router, prefix=f"/{API_VERSION}")

    logger.info("app_created name=%s", get_settings().app_name)
    return app


app = create_app()
