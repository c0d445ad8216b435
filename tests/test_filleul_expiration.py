# tests/test_filleul_expiration.py

import logging
from decimal import Decimal

from parrainage.core import constants as c
from parrainage.core import events

logger = logging.getLogger(__name__)


def test_standard_price_is_stored_once(services, referral_setup):
    manager = services.filleul_expiration

    assert manager.store_standard_price(9001) is True
    assert manager.store_standard_price(9001) is False

    assert services.store.get(9001).get_meta(c.META_STANDARD_PRICE) == "35.00"
    subscription = services.store.get(9100)
    assert subscription.get_meta(c.META_STANDARD_PRICE) == "35.00"
    assert subscription.get_meta(c.META_BILLING_COUNT) == 0
    assert subscription.get_meta(c.META_FIRST_BILLING_DATE) is not None


def test_standard_price_falls_back_to_subscription_total(services, make_record, configure_product):
    configure_product(600, "percentage", "0.10")
    item = [{"id": 1, "product_id": 600, "total": "20.00"}]
    make_record(9002, "order", "processing", "20.00", items=item, meta={c.META_REFERRAL_CODE: "4521"})
    make_record(9102, "subscription", "active", "20.00", items=item, parent_id=9002)

    assert services.filleul_expiration.store_standard_price(9002) is True
    assert services.store.get(9102).get_meta(c.META_STANDARD_PRICE) == "20.00"


def test_order_without_code_is_ignored(services, make_record):
    make_record(9003, "order", "processing")

    assert services.filleul_expiration.store_standard_price(9003) is False


def test_late_subscription_is_initialized_from_order(services, make_record, configure_product):
    configure_product(500, "percentage", "0.10", standard_price="35.00")
    make_record(9004, "order", "processing", "25.00", meta={c.META_REFERRAL_CODE: "4521"})
    services.filleul_expiration.store_standard_price(9004)
    make_record(9104, "subscription", "active", "25.00", parent_id=9004)

    assert services.filleul_expiration.initialize_subscription(9104) is True
    assert services.filleul_expiration.initialize_subscription(9104) is False
    assert services.store.get(9104).get_meta(c.META_STANDARD_PRICE) == "35.00"


def test_twelfth_renewal_restores_standard_price_once(services, referral_setup, captured):
    """Тест-кейс: 12 оплат -> стандартная цена 35.00, дальнейшие продления ничего не меняют."""
    logger.info("--- SCENARIO: filleul discount expiration by renewals ---")
    manager = services.filleul_expiration
    manager.store_standard_price(9001)

    for expected_count in range(1, 12):
        result = manager.track_renewal(9100)
        assert result == {"tracked": True, "facturation_count": expected_count, "expired": False}
    assert services.store.get(9100).get_total() == Decimal("25.00")

    twelfth = manager.track_renewal(9100)
    assert twelfth == {"tracked": True, "facturation_count": 12, "expired": True}

    subscription = services.store.get(9100)
    logger.info(f"Filleul total after 12 renewals = {subscription.get_total()}. Expected = 35.00")
    assert subscription.get_total() == Decimal("35.00")
    assert subscription.get_meta(c.META_FILLEUL_DISCOUNT_EXPIRED) == "yes"
    assert subscription.get_meta(c.META_FILLEUL_EXPIRATION_DATE) is not None
    assert "Remise filleul expirée après 12 facturations. Prix modifié : 25.00€ → 35.00€" in subscription.get_notes()

    assert manager.track_renewal(9100) == {"tracked": False, "reason": "already_expired"}
    assert manager.check_filleul_expirations()["expired"] == 0
    assert len(captured.named(events.FILLEUL_DISCOUNT_EXPIRED)) == 1


def test_daily_sweep_catches_missed_renewal(services, referral_setup, captured):
    manager = services.filleul_expiration
    manager.store_standard_price(9001)
    subscription = services.store.get(9100)
    subscription.update_meta(c.META_BILLING_COUNT, 12)
    subscription.save()

    first = manager.check_filleul_expirations()
    second = manager.check_filleul_expirations()

    assert first["checked"] == 1
    assert first["expired"] == 1
    assert second["checked"] == 0
    assert second["expired"] == 0
    assert services.store.get(9100).get_total() == Decimal("35.00")
    assert manager.track_renewal(9100)["reason"] == "already_expired"
    assert len(captured.named(events.FILLEUL_DISCOUNT_EXPIRED)) == 1


def test_sweep_skips_inactive_subscriptions(services, referral_setup, make_record):
    manager = services.filleul_expiration
    manager.store_standard_price(9001)
    subscription = services.store.get(9100)
    subscription.update_meta(c.META_BILLING_COUNT, 15)
    subscription.save()
    make_record(9100, "subscription", "on-hold")

    stats = manager.check_filleul_expirations()

    assert stats["checked"] == 0
    assert stats["expired"] == 0
    assert services.store.get(9100).get_total() == Decimal("25.00")


def test_renewal_of_regular_subscription_is_not_tracked(services, referral_setup):
    assert services.filleul_expiration.track_renewal(4521) == {"tracked": False, "reason": "not_filleul"}
    assert services.store.get(4521).get_meta(c.META_BILLING_COUNT) is None
