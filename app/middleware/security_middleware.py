"""Security middleware: Basic Auth gate, cron bearer secret, anti-crawl headers."""
import base64
import secrets

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.config import get_settings

# Paths exempt from Basic Auth
OPEN_PATHS = ("/health",)

# Paths external cron calls; they authenticate with "Bearer <cron_secret>"
CRON_PATHS = ("/sync/process-queue", "/sync/daily")


class SecurityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        settings = get_settings()
        path = request.url.path

        # --- Cron endpoints (only when a secret is configured) ---
        if settings.cron_secret and any(path.startswith(p) for p in CRON_PATHS):
            if not self._check_cron_secret(request, settings):
                return Response(content="Unauthorized", status_code=401)
            return await self._finish(request, call_next)

        # --- Basic Auth gate (skip for /health) ---
        if settings.dash_user and settings.dash_pass:
            if not any(path.startswith(p) for p in OPEN_PATHS):
                if not self._check_basic_auth(request, settings):
                    return Response(
                        content="Unauthorized",
                        status_code=401,
                        headers={"WWW-Authenticate": 'Basic realm="Brand Metrics"'},
                    )

        return await self._finish(request, call_next)

    @staticmethod
    async def _finish(request: Request, call_next) -> Response:
        response: Response = await call_next(request)

        # --- Anti-crawl header on every response ---
        response.headers["X-Robots-Tag"] = "noindex, nofollow"

        # Dashboard metrics must never be served stale from a browser cache
        if "application/json" in response.headers.get("content-type", ""):
            response.headers["Cache-Control"] = "private, no-cache"

        return response

    @staticmethod
    def _check_cron_secret(request: Request, settings) -> bool:
        auth_header = request.headers.get("authorization", "")
        return secrets.compare_digest(auth_header, f"Bearer {settings.cron_secret}")

    @staticmethod
    def _check_basic_auth(request: Request, settings) -> bool:
        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Basic "):
            return False
        try:
            decoded = base64.b64decode(auth_header[6:]).decode("utf-8")
            user, password = decoded.split(":", 1)
        except (ValueError, UnicodeDecodeError):
            return False
        user_ok = secrets.compare_digest(user, settings.dash_user)
        pass_ok = secrets.compare_digest(password, settings.dash_pass)
        return user_ok and pass_ok
