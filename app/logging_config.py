from __future__ import annotations

import json
import logging
import logging.config
import os
from typing import Any, Dict

from .core.config import Config


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        payload: Dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S%z"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if hasattr(record, "extra") and isinstance(record.extra, dict):
            payload.update(record.extra)
        return json.dumps(payload, ensure_ascii=False, default=str)


def build_logging_config() -> Dict[str, Any]:
    """Build the dictConfig for the current settings.

    Settings:
      - APP_ENV: production|staging|development
      - LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default: INFO in prod, DEBUG otherwise)
      - LOG_FORMAT: json|text (default: json in prod, text otherwise)
      - LOG_TO_FILE / LOG_FILE_PATH: optional rotating file handler
    """
    app_env = Config.APP_ENV.lower()
    log_level = (Config.LOG_LEVEL or ("INFO" if app_env == "production" else "DEBUG")).upper()
    log_format = (Config.LOG_FORMAT or ("json" if app_env == "production" else "text")).lower()
    formatter = "json" if log_format == "json" else "plain"

    handlers: Dict[str, Dict[str, Any]] = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "stream": "ext://sys.stdout",
            "formatter": formatter,
        }
    }

    if Config.LOG_TO_FILE:
        log_dir = os.path.dirname(Config.LOG_FILE_PATH)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "filename": Config.LOG_FILE_PATH,
            "maxBytes": 5 * 1024 * 1024,  # 5MB
            "backupCount": 3,
            "encoding": "utf-8",
            "delay": True,
            "formatter": formatter,
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {
                "()": JsonFormatter,
            },
            "plain": {
                "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
            },
        },
        "handlers": handlers,
        "root": {
            "level": log_level,
            "handlers": list(handlers.keys()),
        },
        "loggers": {
            # Reduce noise
            "sqlalchemy.engine": {"level": "WARNING"},
            "uvicorn.access": {"level": "WARNING" if app_env == "production" else "INFO"},
        },
    }


def setup_logging() -> None:
    config = build_logging_config()
    logging.config.dictConfig(config)

    logging.getLogger(__name__).info(
        "logging configured",
        extra={
            "extra": {
                "env": Config.APP_ENV,
                "level": config["root"]["level"],
                "to_file": Config.LOG_TO_FILE,
            }
        },
    )
