# parrainage/routers/admin.py

import logging
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status
from sqlalchemy.orm import Session

from parrainage.core import constants as c
from parrainage.crud import product_config as crud_product_config
from parrainage.dependencies import get_db, verify_admin_token
from parrainage.schemas.admin import (
    ActiveDiscountStats,
    DiagnosticReport,
    LifecycleCounters,
    RequeueResponse,
    TaskInfo,
    TaskRunRequest,
)
from parrainage.schemas.product_config import ProductConfig, ProductConfigUpdate
from parrainage.services.container import ServiceContainer, get_services
from parrainage.tasks_registry import TASKS, get_tasks_list

logger = logging.getLogger(__name__)

# Зависимость применяется ко всем эндпоинтам админского раздела
router = APIRouter(dependencies=[Depends(verify_admin_token)])


# --- Диагностика ---

@router.get("/diagnostic", response_model=DiagnosticReport)
def get_diagnostic_report(services: ServiceContainer = Depends(get_services)):
    """
    [АДМИН] Полный отчет: здоровье планировщика, статусы воркфлоу, активные скидки, счетчики.
    """
    report = services.diagnostics.generate_diagnostic_report()
    report["recommendations"] = report["cron_health"]["recommendations"]
    return report


@router.get("/stats", response_model=ActiveDiscountStats)
def get_active_discounts_stats(services: ServiceContainer = Depends(get_services)):
    """[АДМИН] Статистика открытых скидок parrain."""
    return services.discount_manager.get_active_discounts_stats()


@router.get("/counters", response_model=LifecycleCounters)
def get_lifecycle_counters(services: ServiceContainer = Depends(get_services)):
    """[АДМИН] Счетчики приостановок и возобновлений с момента запуска процесса."""
    return {
        "suspension": services.suspension_manager.get_session_stats(),
        "reactivation": services.reactivation_manager.get_session_stats(),
    }


# --- Конфигурация скидок товаров ---

@router.get("/products", response_model=List[ProductConfig])
def list_product_configs(db: Session = Depends(get_db)):
    return crud_product_config.get_configs(db)


@router.get("/products/{product_id}", response_model=ProductConfig)
def get_product_config(product_id: int, db: Session = Depends(get_db)):
    db_config = crud_product_config.get_config(db, product_id)
    if db_config is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product configuration not found")
    return db_config


@router.put("/products/{product_id}", response_model=ProductConfig)
def update_product_config(
    product_id: int,
    config_in: ProductConfigUpdate,
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    """
    [АДМИН] Создает или перезаписывает конфигурацию скидки товара.
    Для percentage значение задается долей: 0.10 = 10%.
    """
    db_config = crud_product_config.upsert_config(db, product_id, config_in)
    services.calculator.clear_config_cache()
    logger.info(f"Discount configuration of product {product_id} updated: {config_in.discount_type} {config_in.discount_value}")
    return db_config


@router.delete("/products/{product_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_product_config(
    product_id: int,
    db: Session = Depends(get_db),
    services: ServiceContainer = Depends(get_services),
):
    if not crud_product_config.delete_config(db, product_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product configuration not found")
    services.calculator.clear_config_cache()


# --- Ручное вмешательство ---

@router.post("/orders/{order_id}/requeue", response_model=RequeueResponse)
def requeue_order(order_id: int, services: ServiceContainer = Depends(get_services)):
    """
    [АДМИН] Возвращает заказ в статусе error, cron_failed или application_failed к повторной обработке.
    """
    order = services.store.get(order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    if order.get_meta(c.META_WORKFLOW_STATUS) not in c.REQUEUE_ALLOWED_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Order workflow status is '{order.get_meta(c.META_WORKFLOW_STATUS)}', requeue not allowed",
        )

    requeued = services.processor.requeue_order(order_id)
    refreshed = services.store.get(order_id)
    return {
        "order_id": order_id,
        "requeued": requeued,
        "workflow_status": refreshed.get_meta(c.META_WORKFLOW_STATUS) if refreshed else None,
    }


# --- Фоновые задачи ---

@router.get("/tasks", response_model=List[TaskInfo])
def get_tasks_list_endpoint():
    """
    [АДМИН] Возвращает список всех доступных для ручного запуска фоновых задач.
    """
    return get_tasks_list()


@router.post("/tasks/run", status_code=status.HTTP_202_ACCEPTED)
async def run_task_endpoint(request_data: TaskRunRequest, background_tasks: BackgroundTasks):
    """
    [АДМИН] Запускает одну конкретную фоновую задачу или все сразу.
    """
    task_name_to_run = request_data.task_name

    if task_name_to_run == "all":
        for name, data in TASKS.items():
            # FastAPI сам разберется, как запустить sync/async функцию
            background_tasks.add_task(data["function"])
        message = "All background tasks have been scheduled to run."
        logger.info("All background tasks were manually triggered.")
    elif task_name_to_run in TASKS:
        background_tasks.add_task(TASKS[task_name_to_run]["function"])
        message = f"Task '{task_name_to_run}' has been scheduled to run."
        logger.info(f"Background task '{task_name_to_run}' was manually triggered.")
    else:
        # Практически недостижимо благодаря валидации Pydantic `Literal`
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Task '{task_name_to_run}' not found.")

    return {"status": "accepted", "message": message}
