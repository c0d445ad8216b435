# tests/conftest.py
from decimal import Decimal
from typing import Any, Dict, List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from parrainage.core import constants as c
from parrainage.core import events
from parrainage.core.events import EventBus
from parrainage.core.scheduler import DelayedTaskScheduler
from parrainage.crud import product_config as crud_product_config
from parrainage.crud import record as crud_record
from parrainage.db.session import Base
from parrainage.models import notification, product_config, record  # Импортируем все модели для создания таблиц
from parrainage.schemas.product_config import ProductConfig, ProductConfigUpdate
from parrainage.services.container import build_services
from parrainage.services.discount_calculator import DiscountCalculator
from parrainage.services.reactivation_manager import reactivation_stats
from parrainage.services.suspension_manager import suspension_stats

# Используем in-memory SQLite для тестов - это быстро и изолированно
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

ALL_EVENTS = (
    events.DISCOUNT_PROCESSED,
    events.DISCOUNT_APPLIED,
    events.DISCOUNT_REMOVED,
    events.DISCOUNT_SUSPENDED,
    events.DISCOUNT_REACTIVATED,
    events.PROCESSING_FAILED,
    events.CRON_FAILURE,
    events.SUBSCRIPTION_PRICE_UPDATED,
    events.FILLEUL_DISCOUNT_EXPIRED,
)


@pytest.fixture(scope="function")
def db_session() -> Session:
    """
    Фикстура для создания чистой базы данных для каждого теста.
    """
    Base.metadata.create_all(bind=engine)  # Создаем все таблицы
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)  # Очищаем все после теста


# --- Планировщик и шина событий ---

class FakeBackend:
    running = False

    def get_jobs(self):
        return []


class FakeScheduler(DelayedTaskScheduler):
    """Запоминает поставленные задачи вместо APScheduler. fail=True имитирует сбой постановки."""

    def __init__(self):
        super().__init__(FakeBackend())
        self.calls: List[Dict[str, Any]] = []
        self.fail = False

    def schedule(self, run_at, hook_name, args) -> bool:
        if self.fail:
            return False
        self.calls.append({"run_at": run_at, "hook": hook_name, "args": list(args)})
        return True

    def calls_for(self, hook_name: str) -> List[Dict[str, Any]]:
        return [call for call in self.calls if call["hook"] == hook_name]


@pytest.fixture
def fake_scheduler() -> FakeScheduler:
    return FakeScheduler()


class EventCapture:
    def __init__(self, bus: EventBus):
        self.received: List[tuple] = []
        for name in ALL_EVENTS:
            bus.subscribe(name, lambda payload, name=name: self.received.append((name, payload)))

    def named(self, event_name: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.received if name == event_name]


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def captured(bus) -> EventCapture:
    return EventCapture(bus)


# --- Сервисы ---

@pytest.fixture
def calculator(db_session) -> DiscountCalculator:
    def load(product_id: int):
        db_config = crud_product_config.get_config(db_session, product_id)
        return ProductConfig.model_validate(db_config) if db_config else None

    return DiscountCalculator(load)


@pytest.fixture
def services(db_session, calculator, fake_scheduler, bus):
    return build_services(db_session, calculator=calculator, scheduler=fake_scheduler, event_bus=bus, simulation_mode=False)


@pytest.fixture(autouse=True)
def reset_session_stats():
    suspension_stats.reset()
    reactivation_stats.reset()
    yield


# --- Фабрики данных ---

@pytest.fixture
def make_record(db_session):
    def _make(
        record_id: int,
        kind: str = "subscription",
        status: str = "active",
        total: str = "30.00",
        items: List[Dict[str, Any]] | None = None,
        customer_id: int | None = None,
        parent_id: int | None = None,
        meta: Dict[str, Any] | None = None,
    ):
        if items is None:
            items = [{"id": record_id * 10, "product_id": 500, "total": total}]
        db_record, _ = crud_record.upsert_record(db_session, {
            "id": record_id,
            "kind": kind,
            "status": status,
            "customer_id": customer_id,
            "parent_id": parent_id,
            "currency": "EUR",
            "total": total,
            "line_items": items,
            "meta": meta or {},
        })
        return db_record

    return _make


@pytest.fixture
def configure_product(db_session, calculator):
    def _configure(product_id: int = 500, discount_type: str = "percentage", discount_value: str = "0.10", standard_price: str | None = None):
        config = crud_product_config.upsert_config(db_session, product_id, ProductConfigUpdate(
            discount_type=discount_type,
            discount_value=Decimal(discount_value),
            standard_price=Decimal(standard_price) if standard_price is not None else None,
        ))
        calculator.clear_config_cache()
        return config

    return _configure


@pytest.fixture
def referral_setup(make_record, configure_product):
    """
    Типовая пара: абонемент parrain #4521 за 30.00, заказ filleul #9001 с кодом 4521
    и абонемент filleul #9100.
    """
    configure_product(500, "percentage", "0.10", standard_price="35.00")
    parrain = make_record(4521, "subscription", "active", "30.00", customer_id=1)
    order = make_record(9001, "order", "processing", "25.00", customer_id=2, meta={c.META_REFERRAL_CODE: "4521"})
    filleul = make_record(9100, "subscription", "active", "25.00", customer_id=2, parent_id=9001)
    return {"parrain_id": parrain.id, "order_id": order.id, "filleul_id": filleul.id}


# --- HTTP-клиент ---

@pytest_asyncio.fixture
async def client(db_session, services, monkeypatch):
    from parrainage.core.config import settings
    from parrainage.dependencies import get_db
    from parrainage.main import app
    from parrainage.services.container import get_services

    monkeypatch.setattr(settings, "ADMIN_API_TOKEN", "test-admin-token")
    monkeypatch.setattr(settings, "WP_WEBHOOK_SECRET", "")

    app.dependency_overrides[get_db] = lambda: db_session
    app.dependency_overrides[get_services] = lambda: services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    return {"X-Admin-Token": "test-admin-token"}
