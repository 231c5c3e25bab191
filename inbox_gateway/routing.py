"""
Per-request dispatch for webhook paths that are configured at runtime.

Routes registered on the FastAPI app are fixed at startup. The provider
webhook path and the admin-defined routes are not, so this middleware
matches every request against the live configuration before FastAPI's
router sees it:

1. provider webhook path: GET -> handshake, POST -> delivery, else 405
2. admin-defined route (method + path) -> rendered template
3. anything else -> regular routes
"""

import logging
from typing import Callable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from inbox_gateway import storage
from inbox_gateway.runtime_config import find_custom_route, webhook_path_config
from inbox_gateway.utils import in_webhook_namespace
from inbox_gateway.webhook import handle_custom_route, handle_event, handle_handshake

logger = logging.getLogger(__name__)


class WebhookDispatchMiddleware(BaseHTTPMiddleware):
    """Catch-all matcher for the provider webhook and admin-defined routes."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path

        if webhook_path_config.matches(path):
            if request.method == "GET":
                return await handle_handshake(request)
            if request.method == "POST":
                return await handle_event(request)
            return JSONResponse(status_code=405, content={"error": "Method Not Allowed"})

        # Admin-defined paths are always normalized into /webhook
        if in_webhook_namespace(path):
            with storage.SessionLocal() as db:
                route = find_custom_route(db, request.method, path)
            if route is not None:
                logger.debug(f"Custom webhook route matched: {route.method} {route.path}")
                return await handle_custom_route(request, route)

        return await call_next(request)
