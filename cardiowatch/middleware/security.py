"""Security headers middleware.

Every response gets content-type, frame and referrer protections plus
``Cache-Control: no-store``: readings, trends and device listings are
patient health information and must not land in shared caches.  HSTS is
sent outside development only.
"""

from __future__ import annotations

from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from cardiowatch.config import Settings, get_settings

SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
    "Content-Security-Policy": "default-src 'none'; frame-ancestors 'none'",
}

NO_STORE_HEADERS: dict[str, str] = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
}

HSTS_VALUE = "max-age=63072000; includeSubDomains"

# Swagger UI loads its own scripts and styles
_DOCS_PATHS = ("/docs", "/redoc", "/openapi.json")


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        s = settings or get_settings()
        self._hsts = s.environment != "development"

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        response = await call_next(request)
        docs = request.url.path.startswith(_DOCS_PATHS)
        for header, value in SECURITY_HEADERS.items():
            if docs and header == "Content-Security-Policy":
                continue
            response.headers.setdefault(header, value)
        # Always overwrite: handlers must not opt PHI into caching
        for header, value in NO_STORE_HEADERS.items():
            response.headers[header] = value
        if self._hsts:
            response.headers["Strict-Transport-Security"] = HSTS_VALUE
        return response
