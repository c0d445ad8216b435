# parrainage/services/container.py

import logging
from dataclasses import dataclass

from fastapi import Depends
from sqlalchemy.orm import Session

from parrainage.core.events import EventBus, event_bus as default_event_bus
from parrainage.core.scheduler import DelayedTaskScheduler, task_scheduler
from parrainage.crud import product_config as crud_product_config
from parrainage.dependencies import get_db, get_db_context
from parrainage.schemas.product_config import ProductConfig
from parrainage.services.diagnostics import DiagnosticsService
from parrainage.services.discount_calculator import DiscountCalculator
from parrainage.services.discount_processor import DiscountProcessor
from parrainage.services.discount_validator import DiscountValidator
from parrainage.services.filleul_expiration import FilleulExpirationManager
from parrainage.services.notification import NotificationService
from parrainage.services.reactivation_handler import ReactivationHandler
from parrainage.services.reactivation_manager import ReactivationManager
from parrainage.services.reactivation_validator import ReactivationValidator
from parrainage.services.record_store import RecordStore
from parrainage.services.subscription_discount import SubscriptionDiscountManager
from parrainage.services.suspension_handler import SuspensionHandler
from parrainage.services.suspension_manager import SuspensionManager
from parrainage.services.suspension_validator import SuspensionValidator

logger = logging.getLogger(__name__)


def load_product_config(product_id: int) -> ProductConfig | None:
    """Читает конфигурацию в отдельной сессии: калькулятор живет дольше запроса."""
    with get_db_context() as db:
        db_config = crud_product_config.get_config(db, product_id)
        return ProductConfig.model_validate(db_config) if db_config else None


# Один калькулятор на процесс, его кеш сбрасывается при изменении конфигураций
discount_calculator = DiscountCalculator(load_product_config)


@dataclass
class ServiceContainer:
    store: RecordStore
    notifier: NotificationService
    calculator: DiscountCalculator
    validator: DiscountValidator
    discount_manager: SubscriptionDiscountManager
    processor: DiscountProcessor
    suspension_manager: SuspensionManager
    reactivation_manager: ReactivationManager
    filleul_expiration: FilleulExpirationManager
    diagnostics: DiagnosticsService


def build_services(
    db: Session,
    calculator: DiscountCalculator | None = None,
    scheduler: DelayedTaskScheduler | None = None,
    event_bus: EventBus | None = None,
    simulation_mode: bool | None = None,
) -> ServiceContainer:
    """
    Собирает сервисы на одну сессию БД (запрос или задачу планировщика).
    Все зависимости передаются явно, тесты подставляют свои.
    """
    calculator = calculator or discount_calculator
    scheduler = scheduler or task_scheduler
    event_bus = event_bus or default_event_bus

    store = RecordStore(db)
    notifier = NotificationService(db)
    validator = DiscountValidator(store, calculator)
    discount_manager = SubscriptionDiscountManager(store, event_bus, notifier)

    processor = DiscountProcessor(
        store, validator, calculator, discount_manager, scheduler, event_bus, simulation_mode=simulation_mode
    )
    suspension_manager = SuspensionManager(
        store,
        SuspensionValidator(store),
        SuspensionHandler(store, discount_manager, event_bus, notifier),
    )
    reactivation_manager = ReactivationManager(
        store,
        ReactivationValidator(store),
        ReactivationHandler(store, discount_manager, event_bus, notifier),
    )
    filleul_expiration = FilleulExpirationManager(store, calculator, discount_manager, event_bus)
    diagnostics = DiagnosticsService(store, discount_manager, scheduler.backend)

    return ServiceContainer(
        store=store,
        notifier=notifier,
        calculator=calculator,
        validator=validator,
        discount_manager=discount_manager,
        processor=processor,
        suspension_manager=suspension_manager,
        reactivation_manager=reactivation_manager,
        filleul_expiration=filleul_expiration,
        diagnostics=diagnostics,
    )


def get_services(db: Session = Depends(get_db)) -> ServiceContainer:
    """Зависимость FastAPI: сервисы на сессию запроса."""
    return build_services(db)
