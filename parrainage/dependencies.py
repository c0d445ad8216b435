# parrainage/dependencies.py

import hmac
import logging
from contextlib import contextmanager
from typing import Iterator

from fastapi import Header, HTTPException, status
from sqlalchemy.orm import Session

from parrainage.core.config import settings
from parrainage.db.session import SessionLocal

# --- Инициализация логгера ---
logger = logging.getLogger(__name__)


# --- Управление сессией БД ---
def get_db_session_instance() -> Session:
    """Создает и возвращает экземпляр сессии БД."""
    return SessionLocal()


def get_db() -> Iterator[Session]:
    """
    Основная зависимость FastAPI для получения сессии БД.
    Это генератор, который корректно работает с `Depends`.
    """
    db = get_db_session_instance()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Iterator[Session]:
    """
    Контекстный менеджер для получения сессии БД вне FastAPI (для задач планировщика).
    """
    db = get_db_session_instance()
    try:
        yield db
    finally:
        db.close()


# --- Авторизация админского API ---

def verify_admin_token(x_admin_token: str | None = Header(default=None)) -> None:
    """
    Зависимость для защиты админских эндпоинтов.
    Без настроенного ADMIN_API_TOKEN админский API закрыт полностью.
    """
    if not settings.ADMIN_API_TOKEN:
        logger.warning("ADMIN_API_TOKEN is not set. Admin API access denied.")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin API is disabled.")

    if not x_admin_token or not hmac.compare_digest(x_admin_token, settings.ADMIN_API_TOKEN):
        logger.warning("Invalid or missing X-Admin-Token on admin request.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token.")
