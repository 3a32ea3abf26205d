"""
Security middleware: per-IP rate limiting, response security headers, CORS and
trusted hosts.
"""
import time
from collections import defaultdict, deque
from threading import Lock
from typing import Deque, Dict, List, Tuple

from fastapi import Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.logger import logger


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window rate limiting per client IP (in-memory, per process)."""

    def __init__(self, app, requests_per_minute: int = 60, requests_per_hour: int = 1000):
        """
        Args:
            app: FastAPI application
            requests_per_minute: Max requests per minute per IP
            requests_per_hour: Max requests per hour per IP
        """
        super().__init__(app)
        # (window seconds, limit)
        self.windows: List[Tuple[int, int]] = [
            (60, requests_per_minute),
            (3600, requests_per_hour),
        ]
        self.requests: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = Lock()
        self.cleanup_interval = 300
        self.last_cleanup = time.time()

    async def dispatch(self, request: Request, call_next):
        client_ip = request.client.host if request.client else "unknown"
        now = time.time()

        with self._lock:
            if now - self.last_cleanup > self.cleanup_interval:
                self._cleanup_old_entries(now)
                self.last_cleanup = now
            allowed = self._check_rate_limit(client_ip, now)

        if not allowed:
            logger.warning(f"Rate limit exceeded for IP: {client_ip}")
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"success": False, "message": "Rate limit exceeded. Please try again later."},
            )
        return await call_next(request)

    def _check_rate_limit(self, client_ip: str, now: float) -> bool:
        history = self.requests[client_ip]
        longest = max(window for window, _ in self.windows)
        while history and now - history[0] >= longest:
            history.popleft()

        for window, limit in self.windows:
            recent = sum(1 for t in history if now - t < window)
            if recent >= limit:
                return False

        history.append(now)
        return True

    def _cleanup_old_entries(self, now: float):
        longest = max(window for window, _ in self.windows)
        for ip in list(self.requests.keys()):
            history = self.requests[ip]
            while history and now - history[0] >= longest:
                history.popleft()
            if not history:
                del self.requests[ip]


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to responses."""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Cache-Control"] = "no-store"
        return response


def setup_cors(app, allowed_origins: list[str], allowed_methods: list[str] = None, allow_credentials: bool = True):
    """
    Setup CORS middleware for the admin frontend and door kiosks.
    """
    if allowed_methods is None:
        allowed_methods = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=allow_credentials,
        allow_methods=allowed_methods,
        allow_headers=["Authorization", "Content-Type"],
    )


def setup_trusted_hosts(app, allowed_hosts: list[str]):
    app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)
