# tests/test_discount_calculator.py

from decimal import Decimal

import pytest

from parrainage.core.exceptions import DiscountConfigurationError
from parrainage.schemas.product_config import ProductConfig
from parrainage.services.discount_calculator import DiscountCalculator, quantize_money


def make_calculator(configs):
    return DiscountCalculator(lambda product_id: configs.get(product_id))


def config(product_id=500, discount_type="percentage", value="0.10"):
    return ProductConfig(product_id=product_id, discount_type=discount_type, discount_value=Decimal(value))


def test_percentage_rounds_half_up():
    calculator = make_calculator({500: config(value="0.10")})

    result = calculator.calculate_parrain_discount(500, Decimal("89.99"), parrain_id=4521)

    assert result.discount_amount == Decimal("9.00")
    assert result.new_price == Decimal("80.99")
    assert result.original_price == Decimal("89.99")
    assert result.formatted_amount == "9,00€/mois"
    assert result.parrain_id == 4521


def test_fixed_amount_never_exceeds_price():
    calculator = make_calculator({500: config(discount_type="fixed", value="15")})

    result = calculator.calculate_parrain_discount(500, Decimal("10.00"))

    assert result.discount_amount == Decimal("10.00")
    assert result.new_price == Decimal("0.00")


def test_percentage_is_capped_by_max_rate():
    calculator = make_calculator({500: config(value="0.80")})

    result = calculator.calculate_parrain_discount(500, Decimal("40.00"))

    assert result.discount_amount == Decimal("20.00")
    assert result.new_price == Decimal("20.00")


def test_fixed_amount_respects_minimum_subscription_amount():
    calculator = DiscountCalculator(
        lambda product_id: config(discount_type="fixed", value="15"),
        min_subscription_amount=Decimal("5.00"),
    )

    result = calculator.calculate_parrain_discount(500, Decimal("12.00"))

    assert result.discount_amount == Decimal("7.00")
    assert result.new_price == Decimal("5.00")


def test_unknown_discount_type_raises_configuration_error():
    calculator = make_calculator({})

    with pytest.raises(DiscountConfigurationError):
        calculator.calculate_discount(config(discount_type="bogus"), Decimal("30.00"))


def test_unknown_discount_type_yields_none_for_product():
    calculator = make_calculator({500: config(discount_type="bogus")})

    assert calculator.calculate_parrain_discount(500, Decimal("30.00")) is None


@pytest.mark.parametrize("product_id, price", [(0, "30.00"), (-3, "30.00"), (500, "0"), (500, "not-a-price")])
def test_invalid_parameters_return_none(product_id, price):
    calculator = make_calculator({500: config()})

    assert calculator.calculate_parrain_discount(product_id, price) is None


def test_missing_configuration_returns_none():
    calculator = make_calculator({})

    assert calculator.calculate_parrain_discount(777, Decimal("30.00")) is None


def test_configurations_are_cached_until_cleared():
    calls = []

    def loader(product_id):
        calls.append(product_id)
        return config(product_id=product_id)

    calculator = DiscountCalculator(loader)
    calculator.calculate_parrain_discount(500, Decimal("30.00"))
    calculator.calculate_parrain_discount(500, Decimal("40.00"))
    assert calls == [500]

    calculator.clear_config_cache()
    calculator.calculate_parrain_discount(500, Decimal("30.00"))
    assert calls == [500, 500]


def test_missing_configuration_is_not_cached():
    configs = {}
    calculator = make_calculator(configs)

    assert calculator.get_product_config(500) is None
    configs[500] = config()
    assert calculator.get_product_config(500) is not None


def test_quantize_money_rounds_half_up():
    assert quantize_money(Decimal("2.005"), 2) == Decimal("2.01")
    assert quantize_money(Decimal("2.004"), 2) == Decimal("2.00")
