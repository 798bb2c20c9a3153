"""Bearer JWT verification middleware for FastAPI.

Validates the HS256 token issued by the external auth service on every
request (except public routes), extracts claims, and sets
``request.state.auth`` with the caller context that route handlers consume
via ``get_current_user``.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

import jwt as pyjwt
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from cardiowatch.config import Settings, get_settings
from cardiowatch.dependencies import AuthContext

logger = logging.getLogger("cardiowatch.auth")

# Paths that do not require authentication
PUBLIC_PATHS: set[str] = {
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    # Authenticated by the device push token instead
    "/api/v1/wearables/push-data",
}

# Webhooks carry their own signature or token
PUBLIC_PREFIXES: tuple[str, ...] = ("/docs", "/redoc", "/api/v1/webhooks/")

VALID_ROLES = frozenset({"patient", "doctor", "nurse", "admin"})


def _is_public(path: str) -> bool:
    return path in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES)


def _unauthorized(detail: str) -> Response:
    return Response(
        content=f'{{"detail":"{detail}"}}',
        status_code=401,
        media_type="application/json",
    )


class JWTAuthMiddleware(BaseHTTPMiddleware):
    """Verify bearer JWTs and populate request.state.auth."""

    def __init__(self, app: Any, settings: Settings | None = None) -> None:
        super().__init__(app)
        self._settings = settings or get_settings()

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        if _is_public(request.url.path):
            return await call_next(request)

        # OPTIONS requests pass through (CORS preflight)
        if request.method == "OPTIONS":
            return await call_next(request)

        auth_header = request.headers.get("Authorization")
        if not auth_header or not auth_header.startswith("Bearer "):
            return _unauthorized("Missing or invalid Authorization header")

        token = auth_header.removeprefix("Bearer ").strip()

        try:
            payload = pyjwt.decode(
                token,
                self._settings.jwt_secret,
                algorithms=[self._settings.jwt_algorithm],
                options={"require": ["sub", "exp"]},
            )
        except pyjwt.ExpiredSignatureError:
            return _unauthorized("Token expired")
        except pyjwt.InvalidTokenError as exc:
            logger.warning("JWT validation failed: %s", type(exc).__name__)
            return _unauthorized("Invalid token")

        role = payload.get("role", "patient")
        if role not in VALID_ROLES:
            return _unauthorized("Invalid token")

        patient_id: uuid.UUID | None = None
        if raw := payload.get("patient_id"):
            try:
                patient_id = uuid.UUID(str(raw))
            except ValueError:
                return _unauthorized("Invalid token")
        if role == "patient" and patient_id is None:
            return _unauthorized("Invalid token")

        request.state.auth = AuthContext(
            user_id=str(payload["sub"]),
            role=role,
            patient_id=patient_id,
        )

        return await call_next(request)
