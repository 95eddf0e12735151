"""Logging configuration based on environment.

Every handler carries two filters: one stamps the request id, the other masks
magic-link tokens so a full token never reaches the log output (uvicorn's
access lines include query strings).
"""

import logging
import re
import sys

from claimease.config import settings

# Development format: cleaner
DEV_FORMAT = "%(levelname)s:     %(name)s - %(message)s"

# Production format: request id ties auth and webhook log lines to one request
PROD_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(request_id)s] %(message)s"

# Magic-link tokens are 64 hex characters
TOKEN_PATTERN = re.compile(r"\b([0-9a-f]{8})[0-9a-f]{56}\b")


class RedactTokensFilter(logging.Filter):
    """Replaces anything shaped like a magic-link token with its 8-char prefix."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = TOKEN_PATTERN.sub(r"\1...", message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


FILTERS = {
    "request_context": {"()": "claimease.api.middleware.RequestContextFilter"},
    "redact_tokens": {"()": "claimease.logging.RedactTokensFilter"},
}


def _stream_handler(formatter: str) -> dict:
    return {
        "class": "logging.StreamHandler",
        "formatter": formatter,
        "filters": list(FILTERS),
        "stream": "ext://sys.stdout",
    }


def get_uvicorn_log_config() -> dict:
    """Get uvicorn log config based on environment."""
    if settings.is_development:
        access_fmt = '%(levelprefix)s "%(request_line)s" %(status_code)s'
        default_fmt = "%(levelprefix)s %(message)s"
    else:
        access_fmt = '%(asctime)s %(levelprefix)s [%(request_id)s] %(client_addr)s - "%(request_line)s" %(status_code)s'
        default_fmt = "%(asctime)s %(levelprefix)s [%(request_id)s] %(message)s"

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": FILTERS,
        "formatters": {
            "access": {"()": "uvicorn.logging.AccessFormatter", "fmt": access_fmt},
            "default": {"()": "uvicorn.logging.DefaultFormatter", "fmt": default_fmt},
        },
        "handlers": {
            "access": _stream_handler("access"),
            "default": _stream_handler("default"),
        },
        "loggers": {
            "uvicorn.access": {"handlers": ["access"], "level": "INFO", "propagate": False},
            "uvicorn.error": {"handlers": ["default"], "level": "INFO", "propagate": False},
        },
        "root": {"handlers": ["default"], "level": settings.log_level},
    }


def setup_logging() -> None:
    """Configure logging for the worker and CLI processes."""
    from claimease.api.middleware import RequestContextFilter

    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format=DEV_FORMAT if settings.is_development else PROD_FORMAT,
        stream=sys.stdout,
    )
    for handler in logging.getLogger().handlers:
        handler.addFilter(RequestContextFilter())
        handler.addFilter(RedactTokensFilter())

    # Quiet noisy loggers
    for name in ("httpx", "httpcore", "stripe", "openai"):
        logging.getLogger(name).setLevel(logging.WARNING)
