"""
Shared-secret authentication for the bulk video worker.

Every /bulk-video/* request must carry an X-Worker-Secret header equal to
WORKER_SHARED_SECRET. The web app adds it when it forwards user requests;
the caller's identity then travels separately in X-User-Id.
"""

import logging
import os
import secrets
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger(__name__)

PROTECTED_PREFIX = "/bulk-video"
SECRET_HEADER = "X-Worker-Secret"


class WorkerAuthMiddleware(BaseHTTPMiddleware):
    """Reject /bulk-video/* requests that lack the worker secret."""

    PUBLIC_PATHS = {"/health", "/metrics", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, secret: Optional[str] = None, environment: Optional[str] = None):
        super().__init__(app)
        self.secret = secret if secret is not None else os.environ.get("WORKER_SHARED_SECRET", "")
        self.environment = environment or os.environ.get("ENVIRONMENT", "development")

    def is_protected(self, path: str) -> bool:
        return path not in self.PUBLIC_PATHS and path.startswith(PROTECTED_PREFIX)

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not self.is_protected(path):
            return await call_next(request)

        if not self.secret:
            # Local development runs without a secret
            if self.environment == "development":
                return await call_next(request)
            logger.error("WORKER_SHARED_SECRET is not configured; refusing bulk-video request")
            return JSONResponse(status_code=500, content={"detail": "WORKER_SHARED_SECRET not configured"})

        provided = request.headers.get(SECRET_HEADER, "")
        if not secrets.compare_digest(provided.encode(), self.secret.encode()):
            logger.warning(f"Rejected {request.method} {path}: invalid or missing worker secret")
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing worker secret"})

        return await call_next(request)
