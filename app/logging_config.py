import logging

from app.config import settings

LOG_FORMAT = '%(asctime)s %(levelname)-8s %(name)s: %(message)s'


def configure_logging(level: str | None = None) -> None:
    resolved = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    logging.basicConfig(level=resolved, format=LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
    # SQL echo is controlled by the engine, not the app log level.
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
