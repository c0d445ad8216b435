# parrainage/tasks_registry.py

import logging

from parrainage.core.scheduler import (
    END_DISCOUNT_HOOK,
    PROCESS_DISCOUNT_HOOK,
    RETRY_DISCOUNT_HOOK,
    DelayedTaskScheduler,
)
from parrainage.dependencies import get_db_context
from parrainage.services.container import build_services

logger = logging.getLogger(__name__)

# --- Обертки, которые создают сессию БД для каждой задачи ---
# Задачи хранятся в SQLAlchemyJobStore, поэтому это функции уровня модуля
# с простыми аргументами.

async def run_process_discount(order_id: int, subscription_id: int, attempt: int = 1):
    with get_db_context() as db:
        build_services(db).processor.process_parrain_discount(order_id, subscription_id, attempt)

async def run_retry_discount(order_id: int, subscription_id: int, attempt: int, previous_error: str | None = None):
    with get_db_context() as db:
        build_services(db).processor.retry_failed_discount(order_id, subscription_id, attempt, previous_error)

async def run_end_discount(parrain_id: int, filleul_id: int):
    with get_db_context() as db:
        build_services(db).processor.end_parrain_discount(parrain_id, filleul_id)

async def run_check_expired_discounts():
    with get_db_context() as db:
        build_services(db).discount_manager.check_expired_discounts()

async def run_check_filleul_expirations():
    with get_db_context() as db:
        build_services(db).filleul_expiration.check_filleul_expirations()


def register_hooks(task_scheduler: DelayedTaskScheduler) -> None:
    task_scheduler.register_hook(PROCESS_DISCOUNT_HOOK, run_process_discount)
    task_scheduler.register_hook(RETRY_DISCOUNT_HOOK, run_retry_discount)
    task_scheduler.register_hook(END_DISCOUNT_HOOK, run_end_discount)


# --- Словарь-реестр задач, доступных для ручного запуска ---
# Ключ - уникальное имя задачи, которое используется в API.
# 'is_async' - флаг, чтобы FastAPI знал, как запускать задачу.

TASKS = {
    "check_expired_discounts": {
        "function": run_check_expired_discounts,
        "description": "Снимает скидки parrain, у которых истекла дата окончания.",
        "is_async": True,
    },
    "check_filleul_expirations": {
        "function": run_check_filleul_expirations,
        "description": "Возвращает стандартную цену абонементам filleul после 12 оплат.",
        "is_async": True,
    },
}

# Отдельная функция для получения списка задач для API
def get_tasks_list():
    return [
        {"task_name": name, "description": data["description"]}
        for name, data in TASKS.items()
    ]
