import logging
import os
import time
import uuid

from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from app.metrics import REQUEST_COUNT, REQUEST_ERRORS, REQUEST_LATENCY

logger = logging.getLogger(__name__)


def _bearer_claims(request: Request) -> dict:
    """Unverified-by-role claims of the bearer token, for log correlation only."""
    auth = request.headers.get("authorization") or ""
    scheme, _, token = auth.partition(" ")
    secret = os.getenv("JWT_SECRET")
    if scheme.lower() != "bearer" or not token.strip() or not secret:
        return {}
    try:
        return jwt.decode(
            token.strip(), secret, algorithms=[os.getenv("JWT_ALGORITHM", "HS256")]
        )
    except JWTError:
        return {}


def _request_path(request: Request) -> str:
    route = request.scope.get("route")
    if route and hasattr(route, "path"):
        return route.path
    return request.url.path


def _observe(request: Request, status_code: int, start: float) -> dict:
    duration_ms = (time.monotonic() - start) * 1000.0
    path = _request_path(request)
    labels = (request.method, path, str(status_code))
    REQUEST_COUNT.labels(*labels).inc()
    REQUEST_LATENCY.labels(*labels).observe(duration_ms / 1000.0)
    if status_code >= 500:
        REQUEST_ERRORS.labels(*labels).inc()
    return {
        "path": path,
        "method": request.method,
        "status": status_code,
        "duration_ms": round(duration_ms, 2),
    }


class ObservabilityMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        claims = _bearer_claims(request)
        context = {
            "request_id": request_id,
            "actor_id": claims.get("sub"),
            "company_id": claims.get("company_id"),
        }
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("request_failed", extra={**context, **_observe(request, 500, start)})
            raise
        context["actor_id"] = getattr(request.state, "actor_id", None) or context["actor_id"]
        logger.info(
            "request_completed",
            extra={**context, **_observe(request, response.status_code, start)},
        )
        response.headers["x-request-id"] = request_id
        return response
