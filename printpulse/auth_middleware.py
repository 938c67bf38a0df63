"""
Shared-secret authentication for the PrintPulse API.

When PRINTPULSE_API_SECRET is set, every request outside PUBLIC_PATHS must
carry a matching X-PrintPulse-Secret header. Without a secret (local use)
all traffic is allowed.
"""

import secrets
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from . import config

SECRET_HEADER = "X-PrintPulse-Secret"


class ApiSecretMiddleware(BaseHTTPMiddleware):
    """Reject requests without the shared secret."""

    PUBLIC_PATHS = {"/health", "/docs", "/openapi.json", "/redoc"}

    def __init__(self, app, secret: Optional[str] = None):
        super().__init__(app)
        self.secret = config.API_SECRET if secret is None else secret

    async def dispatch(self, request: Request, call_next):
        if not self.secret or request.url.path in self.PUBLIC_PATHS:
            return await call_next(request)

        # Constant-time compare
        provided = request.headers.get(SECRET_HEADER, "")
        if not secrets.compare_digest(provided, self.secret):
            return JSONResponse(status_code=401, content={"detail": "Invalid or missing API secret"})

        return await call_next(request)
