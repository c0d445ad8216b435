from decimal import Decimal
from typing import List
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    # Настройки базы данных
    DATABASE_USER: str = "parrainage"
    DATABASE_PASSWORD: str = ""
    DATABASE_HOST: str = "localhost"
    DATABASE_PORT: int = 5432
    DATABASE_NAME: str = "parrainage"

    # Настройки WordPress / WooCommerce
    WP_URL: str = "http://localhost"
    WP_APP_USER: str = ""
    WP_APP_PASSWORD: str = ""
    WP_WEBHOOK_SECRET: str = ""

    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379

    # Telegram используется только для служебных уведомлений администраторам
    TELEGRAM_BOT_TOKEN: str = ""
    ADMIN_CHAT_ID: int | None = None
    SUPER_ADMIN_IDS_STR: str = Field(default="", alias="SUPER_ADMIN_IDS")

    # Секрет для админского API (заголовок X-Admin-Token)
    ADMIN_API_TOKEN: str = ""

    SCHEDULER_TIMEZONE: str = "Europe/Paris"

    # --- Параметры реферальной скидки ---
    PARRAINAGE_ASYNC_DELAY_SECONDS: int = 300
    PARRAINAGE_MAX_RETRY: int = 3
    PARRAINAGE_RETRY_DELAY_SECONDS: int = 600
    PARRAINAGE_DISCOUNT_DURATION_MONTHS: int = 12
    PARRAINAGE_DISCOUNT_GRACE_DAYS: int = 2
    PARRAINAGE_MAX_DISCOUNT_RATE: Decimal = Decimal("0.50")
    PARRAINAGE_MIN_SUBSCRIPTION_AMOUNT: Decimal = Decimal("0")
    PARRAINAGE_DISCOUNT_PRECISION: int = 2
    PARRAINAGE_MAX_DISCOUNTS_PER_PARRAIN: int = 5
    # В режиме симуляции скидка только рассчитывается, цена не меняется
    PARRAINAGE_SIMULATION_MODE: bool = False
    FILLEUL_DISCOUNT_BILLING_CYCLES: int = 12

    @property
    def SUPER_ADMIN_IDS(self) -> List[int]:
        return [int(admin_id.strip()) for admin_id in self.SUPER_ADMIN_IDS_STR.split(',') if admin_id.strip()]

    @property
    def REDIS_URL(self) -> str:
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

    @property
    def DATABASE_URL(self) -> str:
        return f"postgresql+psycopg2://{self.DATABASE_USER}:{self.DATABASE_PASSWORD}@{self.DATABASE_HOST}:{self.DATABASE_PORT}/{self.DATABASE_NAME}"

    model_config = SettingsConfigDict(env_file=".env", populate_by_name=True, extra="ignore")

settings = Settings()
