# parrainage/core/scheduler.py

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Sequence

from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.jobstores.sqlalchemy import SQLAlchemyJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from parrainage.core.config import settings

logger = logging.getLogger(__name__)

# Имена отложенных задач, на которые подписан воркфлоу
PROCESS_DISCOUNT_HOOK = "parrainage_process_discount"
RETRY_DISCOUNT_HOOK = "parrainage_retry_discount"
END_DISCOUNT_HOOK = "parrainage_end_discount"

scheduler = AsyncIOScheduler(timezone=settings.SCHEDULER_TIMEZONE)


def attach_job_store(engine) -> None:
    """
    Подключает постоянное хранилище задач, чтобы отложенные задачи
    переживали перезапуск процесса. Вызывается до scheduler.start().
    Служебные задачи процесса живут в памяти (хранилище "local").
    """
    scheduler.add_jobstore(SQLAlchemyJobStore(engine=engine, tablename="parrainage_jobs"), "default")
    scheduler.add_jobstore(MemoryJobStore(), "local")


def poll_job_store() -> None:
    """
    Пустая периодическая задача. Задачи, добавленные другими воркерами
    в общее хранилище, подхватываются при следующем пробуждении планировщика.
    """


class DelayedTaskScheduler:
    """
    Тонкая обертка над APScheduler: schedule(run_at, hook_name, args) -> bool.
    Хук вызывается с args в момент run_at или позже. Доставка "хотя бы один раз",
    повторные срабатывания отсекаются проверками статусов в самих сервисах.
    """

    def __init__(self, backend: AsyncIOScheduler):
        self.backend = backend
        self.hooks: Dict[str, Callable[..., Any]] = {}

    def register_hook(self, hook_name: str, func: Callable[..., Any]) -> None:
        self.hooks[hook_name] = func
        logger.debug(f"Scheduler hook '{hook_name}' registered -> {func.__name__}")

    def schedule(self, run_at: datetime, hook_name: str, args: Sequence[Any]) -> bool:
        func = self.hooks.get(hook_name)
        if func is None:
            logger.error(f"Cannot schedule unknown hook '{hook_name}'.")
            return False

        job_id = f"{hook_name}:{':'.join(str(a) for a in args)}"
        try:
            self.backend.add_job(
                func,
                "date",
                run_date=run_at,
                args=list(args),
                id=job_id,
                replace_existing=True,
                misfire_grace_time=None,
                coalesce=True,
            )
        except Exception as e:
            logger.error(f"Failed to schedule '{hook_name}' at {run_at.isoformat()}: {e}", exc_info=True)
            return False

        logger.info(f"Hook '{hook_name}' scheduled at {run_at.isoformat()} with args {list(args)}")
        return True

    def list_hooks(self) -> List[str]:
        return sorted(self.hooks)


task_scheduler = DelayedTaskScheduler(scheduler)
