"""Bearer API-key authentication for the discovery endpoints"""
import logging
import secrets
from fastapi import HTTPException, Security, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from discovery_engine import config

logger = logging.getLogger(__name__)

security = HTTPBearer()


def is_known_key(api_key: str, valid_keys: list[str]) -> bool:
    """Constant-time membership check against the configured keys"""
    return any(secrets.compare_digest(api_key.encode(), key.encode()) for key in valid_keys)


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials = Security(security)
) -> str:
    """
    Verify the caller's bearer key against config.API_KEYS.

    Raises:
        HTTPException: 503 when the service has no keys configured,
                       401 for an unknown key
    """
    api_key = credentials.credentials
    valid_keys = config.API_KEYS

    if not valid_keys:
        logger.error("API_KEYS is empty; discovery endpoints are unavailable")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="API authentication not configured"
        )

    if not is_known_key(api_key, valid_keys):
        logger.warning(f"Rejected discovery API call with unknown key {api_key[:4]}...")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key"
        )

    return api_key
