"""Authentication middleware: protects all routes except public paths."""
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from kpi_coach.config import get_settings
from kpi_coach.models.base import SessionLocal
from kpi_coach.services import auth_service

# Paths that never require a user session
PUBLIC_PREFIXES = (
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    # Authenticated by X-Service-Token in the route instead
    "/api/ai/suggestions/ingest",
)


def _session_token(request: Request):
    token = request.cookies.get(get_settings().session_cookie_name)
    if token:
        return token
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip() or None
    return None


class AuthMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        path = request.url.path

        # Allow public paths through
        if any(path.startswith(p) for p in PUBLIC_PREFIXES):
            return await call_next(request)

        token = _session_token(request)
        user = None
        if token:
            db = SessionLocal()
            try:
                user = auth_service.validate_session(db, token)
            finally:
                db.close()

        if user:
            # Attach user to request state for downstream use
            request.state.user = user
            return await call_next(request)

        return JSONResponse(
            status_code=401,
            content={"success": False, "error": {"code": "AUTH_REQUIRED", "message": "Not authenticated"}},
        )
