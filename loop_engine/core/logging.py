import logging
import os
from logging.config import dictConfig
from typing import Any, Optional

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}


class ContextFormatter(logging.Formatter):
    """Appends the `extra={...}` context of a record as sorted key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        if not context:
            return line
        pairs = " ".join(f"{key}={context[key]}" for key in sorted(context))
        return f"{line} | {pairs}"


def build_logging_config(log_level: str, algorithm_level: str) -> dict[str, Any]:
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "context": {
                "()": ContextFormatter,
                "fmt": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
                "datefmt": "%Y-%m-%dT%H:%M:%S%z",
            }
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "context",
                "level": "DEBUG",
            }
        },
        "loggers": {
            "uvicorn": {"handlers": ["console"], "level": log_level, "propagate": False},
            "uvicorn.access": {"handlers": ["console"], "level": log_level, "propagate": False},
            # Forecast and cycle diagnostics are chatty at DEBUG; tuned on their own.
            "loop_engine.services": {"level": algorithm_level},
        },
        "root": {"handlers": ["console"], "level": log_level},
    }


def configure_logging(level: Optional[str] = None, algorithm_level: Optional[str] = None) -> None:
    log_level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    algorithm_level = (algorithm_level or os.environ.get("LOOP_ALGORITHM_LOG_LEVEL", log_level)).upper()
    dictConfig(build_logging_config(log_level, algorithm_level))
    logging.getLogger(__name__).debug(
        "Logging configured", extra={"level": log_level, "algorithm_level": algorithm_level}
    )


__all__ = ["ContextFormatter", "build_logging_config", "configure_logging"]
