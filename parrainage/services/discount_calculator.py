# parrainage/services/discount_calculator.py

import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Callable, Dict

from parrainage.core.audit import audit_log
from parrainage.core.config import settings
from parrainage.core.exceptions import DiscountConfigurationError
from parrainage.schemas.discount import DiscountCalculation
from parrainage.schemas.product_config import ProductConfig

logger = logging.getLogger(__name__)

CHANNEL = "discount-calculator"

SUPPORTED_DISCOUNT_TYPES = ("percentage", "fixed")

ConfigLoader = Callable[[int], ProductConfig | None]


def quantize_money(value: Decimal, precision: int | None = None) -> Decimal:
    """Округление денежной суммы "половина вверх" до заданной точности."""
    places = settings.PARRAINAGE_DISCOUNT_PRECISION if precision is None else precision
    return Decimal(value).quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP)


class DiscountCalculator:
    """
    Считает размер скидки parrain по конфигурации товара.
    Конфигурации кешируются по product_id на все время жизни экземпляра,
    после изменения конфигурации кеш нужно сбросить через clear_config_cache().
    """

    def __init__(
        self,
        config_loader: ConfigLoader,
        max_discount_rate: Decimal | None = None,
        min_subscription_amount: Decimal | None = None,
        precision: int | None = None,
    ):
        self.config_loader = config_loader
        self.max_discount_rate = Decimal(str(max_discount_rate if max_discount_rate is not None else settings.PARRAINAGE_MAX_DISCOUNT_RATE))
        self.min_subscription_amount = Decimal(str(min_subscription_amount if min_subscription_amount is not None else settings.PARRAINAGE_MIN_SUBSCRIPTION_AMOUNT))
        self.precision = precision if precision is not None else settings.PARRAINAGE_DISCOUNT_PRECISION
        self._config_cache: Dict[int, ProductConfig] = {}

    def get_product_config(self, product_id: int) -> ProductConfig | None:
        if product_id in self._config_cache:
            return self._config_cache[product_id]

        config = self.config_loader(product_id)
        if config is not None:
            self._config_cache[product_id] = config
        return config

    def clear_config_cache(self) -> None:
        self._config_cache.clear()
        audit_log.debug("Product configuration cache cleared", channel=CHANNEL)

    def calculate_discount(self, config: ProductConfig, current_price: Decimal, parrain_id: int | None = None) -> DiscountCalculation:
        """
        Чистый расчет: конфигурация + текущая цена -> сумма скидки и новая цена.
        Неизвестный тип скидки - ошибка конфигурации, молча ничего не подставляем.
        """
        price = Decimal(str(current_price))
        value = Decimal(str(config.discount_value))

        if config.discount_type == "percentage":
            rate = min(value, self.max_discount_rate)
            amount = price * rate
        elif config.discount_type == "fixed":
            amount = min(value, price - self.min_subscription_amount)
        else:
            raise DiscountConfigurationError(f"Unsupported discount type: {config.discount_type!r}")

        amount = max(Decimal("0"), quantize_money(amount, self.precision))
        new_price = max(self.min_subscription_amount, quantize_money(price - amount, self.precision))

        return DiscountCalculation(
            product_id=config.product_id,
            parrain_id=parrain_id,
            discount_type=config.discount_type,
            discount_value=value,
            original_price=quantize_money(price, self.precision),
            discount_amount=amount,
            new_price=quantize_money(new_price, self.precision),
            currency=config.currency,
            formatted_amount=self.format_discount_amount(amount),
            calculated_at=datetime.now(timezone.utc),
        )

    def calculate_parrain_discount(self, product_id: int, current_price, parrain_id: int | None = None) -> DiscountCalculation | None:
        """
        Расчет для конкретного товара. Ошибка по одному товару не прерывает обработку заказа,
        поэтому вместо исключения возвращается None.
        """
        try:
            price = Decimal(str(current_price))
        except (InvalidOperation, TypeError):
            audit_log.warning("Invalid price for discount calculation", {"product_id": product_id, "price": str(current_price)}, CHANNEL)
            return None

        if not product_id or int(product_id) <= 0:
            audit_log.warning("Invalid product id for discount calculation", {"product_id": product_id}, CHANNEL)
            return None
        if price <= 0 or price < self.min_subscription_amount:
            audit_log.warning(
                "Price below minimum subscription amount",
                {"product_id": product_id, "price": str(price), "minimum": str(self.min_subscription_amount)},
                CHANNEL,
            )
            return None

        config = self.get_product_config(int(product_id))
        if config is None:
            audit_log.warning("Discount configuration not found for product", {"product_id": product_id}, CHANNEL)
            return None

        try:
            calculation = self.calculate_discount(config, price, parrain_id)
        except DiscountConfigurationError as e:
            audit_log.error(
                "Discount configuration error",
                {"product_id": product_id, "parrain_id": parrain_id, "error": str(e)},
                CHANNEL,
            )
            return None
        except Exception as e:
            logger.error(f"Unexpected error while calculating discount for product {product_id}", exc_info=True)
            audit_log.error("Discount calculation failed", {"product_id": product_id, "error": str(e)}, CHANNEL)
            return None

        audit_log.info(
            "Parrain discount calculated",
            {
                "product_id": product_id,
                "parrain_id": parrain_id,
                "original_price": str(calculation.original_price),
                "discount_amount": str(calculation.discount_amount),
                "new_price": str(calculation.new_price),
            },
            CHANNEL,
        )
        return calculation

    def format_discount_amount(self, amount) -> str:
        """9.00 -> '9,00€/mois'"""
        value = quantize_money(Decimal(str(amount)), self.precision)
        return f"{value:.{self.precision}f}".replace(".", ",") + "€/mois"
