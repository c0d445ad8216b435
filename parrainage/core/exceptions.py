# parrainage/core/exceptions.py


class ParrainageError(Exception):
    """Базовое исключение сервиса реферальных скидок."""


class DiscountConfigurationError(ParrainageError):
    """Неподдерживаемый тип скидки или отсутствующая конфигурация товара."""


class DiscountApplicationError(ParrainageError):
    """Скидку невозможно применить к абонементу (нет товаров, неверная цена и т.п.)."""


class TransientInfrastructureError(ParrainageError):
    """Временный сбой инфраструктуры (планировщик, хранилище). Обрабатывается повтором."""


class RecordNotFoundError(ParrainageError):
    """Заказ или абонемент не найден в хранилище."""
