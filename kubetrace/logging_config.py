"""
Logging configuration that keeps trace output on stdout clean
"""

import logging
import logging.config
from typing import Any, Dict


class KubeClientNoiseFilter(logging.Filter):
    """Filter to suppress chatty kubernetes client transport logs."""

    NOISY_PREFIXES = ("urllib3", "websocket", "kubernetes.client.rest")

    def filter(self, record: logging.LogRecord) -> bool:
        """Drop transport DEBUG records, keep their warnings and errors."""
        if record.name.startswith(self.NOISY_PREFIXES):
            return record.levelno >= logging.WARNING
        return True


def get_logging_config(level: str = "WARNING") -> Dict[str, Any]:
    """Get logging configuration. Everything goes to stderr."""
    level = level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {
            "kube_client_noise": {
                "()": KubeClientNoiseFilter
            }
        },
        "formatters": {
            "default": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            }
        },
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": "default",
                "stream": "ext://sys.stderr",
                "filters": ["kube_client_noise"]
            }
        },
        "loggers": {
            "kubetrace": {
                "handlers": ["default"],
                "level": level,
                "propagate": False
            }
        },
        "root": {
            "level": level,
            "handlers": ["default"]
        }
    }


def configure_logging(level: str = "WARNING") -> None:
    logging.config.dictConfig(get_logging_config(level))
