# alembic/env.py

import sys
from os.path import abspath, dirname
# Добавляем путь к проекту, чтобы импорты работали
sys.path.insert(0, abspath(dirname(dirname(__file__))))

from logging.config import fileConfig
from sqlalchemy import engine_from_config
from sqlalchemy.pool import NullPool
from alembic import context

# 1. Объект настроек, который умеет читать .env
from parrainage.core.config import settings
# 2. Базовый класс моделей
from parrainage.db.session import Base
# 3. Все модели, чтобы их таблицы попали в метаданные
from parrainage.models.record import Record, RecordItem, RecordMeta, RecordNote
from parrainage.models.product_config import ProductDiscountConfig
from parrainage.models.notification import DiscountNotification

# 4. Указываем Alembic на метаданные моделей
target_metadata = Base.metadata

# Таблицу задач создает сам APScheduler (SQLAlchemyJobStore)
EXCLUDED_TABLES = {"parrainage_jobs"}


def include_object(obj, name, type_, reflected, compare_to):
    return not (type_ == "table" and name in EXCLUDED_TABLES)


config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode."""
    context.configure(
        url=settings.DATABASE_URL,
        target_metadata=target_metadata,
        include_object=include_object,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode."""
    # URL берется из settings, а не из alembic.ini
    connectable = engine_from_config(
        {"sqlalchemy.url": settings.DATABASE_URL},
        prefix="sqlalchemy.",
        poolclass=NullPool,
    )

    with connectable.connect() as connection:
        context.configure(
            connection=connection, target_metadata=target_metadata, include_object=include_object
        )

        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
