import structlog
from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from config import get_settings

logger = structlog.get_logger(__name__)

limiter = Limiter(
    key_func=get_remote_address, enabled=get_settings().rate_limit_enabled
)

# One bucket per client address and route group, limits read per request.
auth_limit = limiter.shared_limit(lambda: get_settings().auth_rate_limit, scope="auth")
ai_limit = limiter.shared_limit(lambda: get_settings().ai_rate_limit, scope="ai")


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    logger.warning(
        "rate limit exceeded",
        path=request.url.path,
        client=get_remote_address(request),
        limit=str(exc.detail),
    )
    return JSONResponse(status_code=429, content={"detail": "too many requests"})
