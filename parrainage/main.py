# parrainage/main.py

import asyncio
import logging
import traceback
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse

# Конфигурация и ядро
from parrainage.core.config import settings as config
from parrainage.core.events import event_bus
from parrainage.core.logging_config import setup_logging
from parrainage.core.redis import acquire_startup_lock, release_startup_lock
from parrainage.core.scheduler import attach_job_store, poll_job_store, scheduler, task_scheduler
from parrainage.db.session import engine

# Роутеры FastAPI
from parrainage.routers import admin as admin_router
from parrainage.routers.webhooks import wc_router

# Фоновые задачи и сервисы
from parrainage.bot.services import notification as bot_notification_service
from parrainage.clients.woocommerce import wc_client
from parrainage.services import woocommerce_sync
from parrainage.tasks_registry import register_hooks, run_check_expired_discounts, run_check_filleul_expirations

# --- Инициализация ---
logger = logging.getLogger(__name__)


# --- Обработчик критических ошибок ---
async def unhandled_exception_handler(request: Request, exc: Exception):
    """
    Глобальный обработчик для всех необработанных исключений.
    Логирует ошибку и отправляет уведомление супер-админам.
    """
    logger.critical(f"Unhandled exception for request: {request.method} {request.url}", exc_info=exc)

    error_details = "".join(traceback.format_exception(exc))
    client = f"{request.client.host}:{request.client.port}" if request.client else "unknown"

    error_message = (
        f"🚨 <b>Critical error in parrainage API!</b>\n\n"
        f"<b>URL:</b> <code>{request.method} {request.url}</code>\n"
        f"<b>Client:</b> <code>{client}</code>\n\n"
        f"<b>Traceback:</b>\n<pre>{error_details}</pre>"
    )

    asyncio.create_task(
        bot_notification_service.send_error_to_super_admins(error_message)
    )

    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error. The administrator has been notified."},
    )


def register_event_listeners() -> None:
    """Подписчики шины событий нужны каждому воркеру: вебхуки обрабатывают все."""
    bot_notification_service.register_alert_listeners(event_bus)
    woocommerce_sync.register_listeners(event_bus)


# --- Lifespan Manager (запуск и остановка приложения) ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Application lifespan startup...")

    register_hooks(task_scheduler)
    register_event_listeners()

    # Надежная блокировка через Redis: планировщиком владеет один воркер
    is_main_worker = await acquire_startup_lock()

    if not scheduler.running:
        attach_job_store(engine)

    if is_main_worker:
        logger.info("This is the main worker. Starting scheduler...")
        if not scheduler.running:
            tz = config.SCHEDULER_TIMEZONE
            scheduler.add_job(run_check_expired_discounts, 'cron', hour=3, minute=0, timezone=tz,
                              id="check_expired_discounts", replace_existing=True)
            scheduler.add_job(run_check_filleul_expirations, 'cron', hour=3, minute=30, timezone=tz,
                              id="check_filleul_expirations", replace_existing=True)
            scheduler.add_job(poll_job_store, "interval", minutes=1, jobstore="local", id="poll_job_store")
            scheduler.start()
            logger.info(f"Scheduler started with hooks: {task_scheduler.list_hooks()}")
    else:
        # Пауза: задачи этого воркера только записываются в общее хранилище
        if not scheduler.running:
            scheduler.start(paused=True)
        logger.info("This is a secondary worker. Scheduler started paused, jobs run in the main worker.")

    yield

    # Код при остановке
    await wc_client.close()
    if scheduler.running:
        scheduler.shutdown()
        logger.info("Scheduler shut down.")
    if is_main_worker:
        logger.info("Main worker shutting down...")
        await release_startup_lock()
    else:
        logger.info("Secondary worker shutting down.")


# --- Создание FastAPI приложения ---
app = FastAPI(
    title="Parrainage Discount Service",
    description="Referral discount lifecycle for WooCommerce Subscriptions",
    version="0.1.0",
    lifespan=lifespan
)

# --- Регистрация обработчика исключений ---
app.add_exception_handler(Exception, unhandled_exception_handler)

# --- Подключение роутеров ---
api_router = APIRouter(prefix="/api/v1")
api_router.include_router(admin_router.router, prefix="/admin/parrainage", tags=["Admin"])
app.include_router(api_router)

app.include_router(wc_router, prefix="/internal/webhooks", tags=["Internal Webhooks"])
