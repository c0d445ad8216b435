# parrainage/core/logging_config.py

import json
import logging
from logging.config import dictConfig


class AuditFormatter(logging.Formatter):
    """Добавляет к сообщению канал и контекст аудита в виде JSON."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        channel = getattr(record, "channel", "-")
        context = getattr(record, "context", None) or {}
        return f"{base} [{channel}] {json.dumps(context, default=str, ensure_ascii=False)}"


LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "default": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
        "audit": {
            "()": AuditFormatter,
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            "datefmt": "%Y-%m-%d %H:%M:%S",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "default",
            "stream": "ext://sys.stdout",
        },
        "audit_console": {
            "class": "logging.StreamHandler",
            "formatter": "audit",
            "stream": "ext://sys.stdout",
        },
    },
    "loggers": {
        "uvicorn": {"handlers": ["console"], "level": "INFO"},
        "fastapi": {"handlers": ["console"], "level": "INFO"},
        "apscheduler": {"handlers": ["console"], "level": "WARNING", "propagate": False},
        "parrainage": {"handlers": ["console"], "level": "INFO", "propagate": False},
        # Журнал аудита пишется отдельным обработчиком, чтобы не дублировать строки
        "parrainage.audit": {"handlers": ["audit_console"], "level": "DEBUG", "propagate": False},
    },
    "root": {
        "level": "INFO",
        "handlers": ["console"],
    },
}

def setup_logging():
    """Применяет конфигурацию логирования."""
    dictConfig(LOGGING_CONFIG)
