"""
Rate limiting for the environment API (slowapi, moving window, in memory).

Installs are throttled per client *and* per dependency kind, so retrying a
failed model download does not eat the budget for installing the package.
Rejections use the same error body as every other refused operation.
"""

from datetime import datetime, timezone

from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request, Response
from fastapi.responses import JSONResponse
import logging

from provisioner.config import settings

logger = logging.getLogger(__name__)

if settings.IS_DEVELOPMENT:
    INSTALL_LIMIT = "99999/hour"
    CHECK_LIMIT = "99999/hour"
    GENERAL_API_LIMIT = "99999/minute"
else:
    INSTALL_LIMIT = "20/hour"    # install/remove, per kind
    CHECK_LIMIT = "120/hour"     # each check spawns probe processes
    GENERAL_API_LIMIT = "1000/hour"


def client_and_kind(request: Request) -> str:
    """Limiter key for per-dependency routes: `<client address>:<kind>`."""
    kind = request.path_params.get("kind")
    client = get_remote_address(request)
    return f"{client}:{kind}" if kind else client


limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[GENERAL_API_LIMIT],
    storage_uri="memory://",
    strategy="moving-window",
    enabled=settings.RATE_LIMIT_ENABLED,
)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    kind = request.path_params.get("kind")
    logger.warning(f"⏱️ Rate limit exceeded: {client_and_kind(request)} on {request.method} {request.url.path}")

    return JSONResponse(
        status_code=429,
        content={
            "detail": "Too many requests. Please slow down.",
            "error_code": "RATE_LIMITED",
            "message": "Too many requests. Please slow down.",
            "recoverable": True,
            "context": {"limit": str(exc.detail), **({"kind": kind} if kind else {})},
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )
