import logging

from maes.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | None = None) -> None:
    """Configure root logging once for the API process or a Celery worker"""
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format=LOG_FORMAT,
    )
    # Broker/HTTP client chatter drowns out job transitions at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("kombu").setLevel(logging.WARNING)
