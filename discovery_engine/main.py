"""Main entry point for the discovery engine API"""
import logging
import uvicorn

from discovery_engine.api.server import create_api_application
from discovery_engine.config import API_HOST, API_PORT, LOG_LEVEL

logger = logging.getLogger(__name__)


def main() -> None:
    """Serve the API with uvicorn"""
    logger.info(f"Starting discovery engine on {API_HOST}:{API_PORT}")
    uvicorn.run(
        create_api_application(),
        host=API_HOST,
        port=API_PORT,
        log_level=LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
