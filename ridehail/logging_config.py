"""
Logging configuration shared by the API, sockets and services
"""

import logging.config

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging once at application startup"""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"default": {"format": LOG_FORMAT}},
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "formatter": "default",
                }
            },
            "root": {"level": level.upper(), "handlers": ["console"]},
            "loggers": {
                # pymongo heartbeats are noisy at INFO
                "pymongo": {"level": "WARNING"},
                "httpx": {"level": "WARNING"},
            },
        }
    )
