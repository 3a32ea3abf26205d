"""
Authentication middleware: flags requests to protected routes that arrive
without credentials. Token validation itself is done by FastAPI dependencies.
"""
from typing import List

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from core.logger import logger

# Exact-match public paths
PUBLIC_PATHS: List[str] = [
    "/",
    "/health",
    "/openapi.json",
]

# Prefix-match public paths (door kiosks call these without a session)
PUBLIC_PREFIXES: List[str] = [
    "/docs",
    "/redoc",
    "/api/auth/login",
    "/api/access/code",
    "/api/access/face",
    "/api/access/double-verify",
    "/api/access/motion",
    "/api/access/captures",
]


def is_public_path(path: str) -> bool:
    if path in PUBLIC_PATHS:
        return True
    return any(path == prefix or path.startswith(prefix + "/") for prefix in PUBLIC_PREFIXES)


class AuthRequiredMiddleware(BaseHTTPMiddleware):
    """Logs unauthenticated calls to protected routes; dependencies answer 401."""

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if request.method == "OPTIONS" or is_public_path(path):
            return await call_next(request)

        if not request.headers.get("authorization"):
            client = request.client.host if request.client else "unknown"
            logger.warning(f"Request without authentication headers: {request.method} {path} from {client}")

        return await call_next(request)
