import logging

from shared.config import settings
from shared.logging import setup_logging

__all__ = []

# Persistent logging for the API process, set up on import
try:
    setup_logging(service_name="web", log_dir=settings.LOG_DIR, level=settings.LOG_LEVEL)
except OSError as e:
    # Log directory not writable (local runs, tests): console only
    logging.basicConfig(level=settings.LOG_LEVEL.upper())
    logging.getLogger(__name__).warning("file logging disabled", extra={"log_dir": settings.LOG_DIR, "error": str(e)})
