"""Rate limiting and CORS for the discovery API"""
import logging
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from discovery_engine.config import (
    CORS_ORIGINS,
    RATE_LIMIT_ANALYZE,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_READ,
)

logger = logging.getLogger(__name__)


def rate_limit_key(request: Request) -> str:
    """
    Bucket requests by journal owner.

    A deep analysis scans the whole history of one user, so limits follow the
    user in the path; routes without one fall back to the client address.
    """
    user_id = request.path_params.get("user_id")
    if user_id:
        return f"user:{user_id}"
    return get_remote_address(request)


limiter = Limiter(key_func=rate_limit_key, enabled=RATE_LIMIT_ENABLED)


def setup_cors(app):
    """Configure CORS middleware"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type"],
    )

    logger.info(f"CORS configured for origins: {CORS_ORIGINS}")


def setup_rate_limiting(app):
    """Configure rate limiting"""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    if limiter.enabled:
        logger.info(f"Rate limiting per user: analyze {RATE_LIMIT_ANALYZE}, reads {RATE_LIMIT_READ}")
    else:
        logger.info("Rate limiting disabled")
