# parrainage/core/events.py

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List

logger = logging.getLogger(__name__)

# Имена событий, на которые подписываются внешние получатели
DISCOUNT_PROCESSED = "discount_processed"
DISCOUNT_APPLIED = "discount_applied"
DISCOUNT_REMOVED = "discount_removed"
DISCOUNT_SUSPENDED = "discount_suspended"
DISCOUNT_REACTIVATED = "discount_reactivated"
PROCESSING_FAILED = "processing_failed"
CRON_FAILURE = "cron_failure"
SUBSCRIPTION_PRICE_UPDATED = "subscription_price_updated"
FILLEUL_DISCOUNT_EXPIRED = "filleul_discount_expired"

Listener = Callable[[Dict[str, Any]], Any]


class EventBus:
    """
    Простая шина событий "выстрелил и забыл".
    Синхронные подписчики вызываются сразу, асинхронные ставятся задачей
    в текущий event loop. Ошибка подписчика никогда не доходит до источника события.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._background_tasks: set = set()

    def subscribe(self, event_name: str, listener: Listener) -> None:
        if listener not in self._listeners[event_name]:
            self._listeners[event_name].append(listener)

    def unsubscribe(self, event_name: str, listener: Listener) -> None:
        if listener in self._listeners[event_name]:
            self._listeners[event_name].remove(listener)

    def emit(self, event_name: str, payload: Dict[str, Any] | None = None) -> int:
        """Рассылает событие подписчикам. Возвращает количество вызванных подписчиков."""
        payload = payload or {}
        listeners = list(self._listeners.get(event_name, []))
        logger.debug(f"Emitting event '{event_name}' to {len(listeners)} listener(s).")

        for listener in listeners:
            try:
                if inspect.iscoroutinefunction(listener):
                    self._dispatch_async(listener, payload)
                else:
                    listener(payload)
            except Exception:
                logger.error(f"Listener {listener!r} failed for event '{event_name}'", exc_info=True)
        return len(listeners)

    def _dispatch_async(self, listener: Listener, payload: Dict[str, Any]) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Нет активного цикла (скрипты, синхронные тесты) - выполняем на месте
            asyncio.run(listener(payload))
            return
        task = loop.create_task(listener(payload))
        # Держим ссылку на задачу, иначе ее может собрать GC до завершения
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)


event_bus = EventBus()
