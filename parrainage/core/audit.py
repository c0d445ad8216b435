# parrainage/core/audit.py

import logging
from typing import Any, Dict

AUDIT_LOGGER_NAME = "parrainage.audit"


class AuditLog:
    """
    Структурированный журнал аудита с разбивкой по каналам.
    Каждая запись уходит в логгер `parrainage.audit.<channel>` и несет
    контекст в атрибутах записи (см. AuditFormatter в logging_config).
    """

    def __init__(self, base_name: str = AUDIT_LOGGER_NAME):
        self.base_name = base_name

    def _log(self, level: int, message: str, context: Dict[str, Any] | None, channel: str) -> None:
        channel_logger = logging.getLogger(f"{self.base_name}.{channel}")
        channel_logger.log(level, message, extra={"channel": channel, "context": context or {}})

    def debug(self, message: str, context: Dict[str, Any] | None = None, channel: str = "general") -> None:
        self._log(logging.DEBUG, message, context, channel)

    def info(self, message: str, context: Dict[str, Any] | None = None, channel: str = "general") -> None:
        self._log(logging.INFO, message, context, channel)

    def warning(self, message: str, context: Dict[str, Any] | None = None, channel: str = "general") -> None:
        self._log(logging.WARNING, message, context, channel)

    def error(self, message: str, context: Dict[str, Any] | None = None, channel: str = "general") -> None:
        self._log(logging.ERROR, message, context, channel)


audit_log = AuditLog()
