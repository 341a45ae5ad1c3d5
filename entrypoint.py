import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "DEBUG")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from constants import HOST, PORT, STORE_BACKEND
from logging_config import get_logger

logger = get_logger(__name__)


def main() -> None:
    reload = os.getenv("RELOAD", "false").lower() == "true"
    logger.info(f"Starting burnroom server on {HOST}:{PORT} ({STORE_BACKEND} backend)")
    if STORE_BACKEND == "memory" and reload:
        logger.warning("Reload restarts the process and drops every in-memory room")
    uvicorn.run("app:app", host=HOST, port=PORT, reload=reload)


if __name__ == "__main__":
    main()
