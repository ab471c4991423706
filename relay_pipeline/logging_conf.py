"""Logging configuration built around structlog JSON logging."""

from __future__ import annotations

import logging
import logging.config
import os
from collections import deque
from pathlib import Path
from typing import Iterable

import structlog
from pythonjsonlogger.jsonlogger import JsonFormatter

_LOGGING_INITIALISED = False
_JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def _default_log_dir() -> Path:
    home = os.environ.get("RELAY_PIPELINE_HOME")
    if home:
        return Path(home).expanduser() / "logs"
    return Path(__file__).resolve().parents[1] / "logs"


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Configure structlog + stdlib handlers and return application logger."""

    global _LOGGING_INITIALISED
    log_dir = _default_log_dir()
    error_log = log_dir / "error.log"
    pipeline_log = log_dir / "pipeline.log"
    (log_dir / "pipelines").mkdir(parents=True, exist_ok=True)
    error_log.touch(exist_ok=True)
    pipeline_log.touch(exist_ok=True)

    if not _LOGGING_INITIALISED:
        level = "DEBUG" if verbose else "INFO"
        logging.config.dictConfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "formatters": {
                    "plain": {
                        "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                        "fmt": _JSON_FORMAT,
                    }
                },
                "handlers": {
                    "console": {
                        "class": "logging.StreamHandler",
                        "level": level,
                        "formatter": "plain",
                    },
                    "pipeline_file": {
                        "class": "logging.FileHandler",
                        "level": "INFO",
                        "filename": str(pipeline_log),
                        "formatter": "plain",
                    },
                    "error_file": {
                        "class": "logging.FileHandler",
                        "level": "ERROR",
                        "filename": str(error_log),
                        "formatter": "plain",
                    },
                },
                "loggers": {
                    "relay_pipeline": {
                        "handlers": ["console", "pipeline_file", "error_file"],
                        "level": level,
                        "propagate": False,
                    },
                },
            }
        )

        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _LOGGING_INITIALISED = True
    return structlog.get_logger("relay_pipeline")


def _pipeline_handler(path: Path) -> logging.Handler:
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(JsonFormatter(_JSON_FORMAT))
    handler.setLevel(logging.INFO)
    return handler


def pipeline_logger(pipeline: str) -> structlog.BoundLogger:
    """Return a logger bound to one pipeline, mirrored into ``logs/pipelines/<name>.log``."""

    configure_logging()
    path = _default_log_dir() / "pipelines" / f"{pipeline}.log"
    path.parent.mkdir(parents=True, exist_ok=True)

    py_logger = logging.getLogger(f"relay_pipeline.{pipeline}")
    known = {getattr(handler, "baseFilename", None) for handler in py_logger.handlers}
    if os.path.abspath(path) not in known:
        py_logger.addHandler(_pipeline_handler(path))
    return structlog.get_logger(py_logger.name).bind(pipeline=pipeline)


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    """Return the last N lines from a log file."""

    if not path.exists() or line_count <= 0:
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        return list(deque(stream, maxlen=line_count))


def default_log_path(name: str = "pipeline") -> Path:
    """Return ``logs/<name>.log``, or the per-pipeline file when it exists."""

    log_dir = _default_log_dir()
    pipeline_path = log_dir / "pipelines" / f"{name}.log"
    if pipeline_path.exists():
        return pipeline_path
    return log_dir / f"{name}.log"


def available_pipeline_logs() -> Iterable[Path]:
    """Yield available per-pipeline log file paths."""

    pipelines_dir = _default_log_dir() / "pipelines"
    if not pipelines_dir.exists():
        return []
    return sorted(p for p in pipelines_dir.glob("*.log"))


__all__ = [
    "available_pipeline_logs",
    "configure_logging",
    "default_log_path",
    "pipeline_logger",
    "tail_log",
]
