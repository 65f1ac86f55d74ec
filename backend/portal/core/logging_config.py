"""
Logging setup shared by the API process and the Celery worker.
"""
import logging.config

from portal.core.config import settings


def configure_logging(level: str | None = None) -> None:
    level = (level or settings.LOG_LEVEL).upper()
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)-8s %(name)s: %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "default",
            },
        },
        "loggers": {
            "portal": {"handlers": ["console"], "level": level, "propagate": False},
            # pywebpush logs every request at INFO
            "pywebpush": {"level": "WARNING"},
        },
        "root": {"handlers": ["console"], "level": "WARNING"},
    })
