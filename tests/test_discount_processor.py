# tests/test_discount_processor.py

import logging
from decimal import Decimal

from parrainage.core import constants as c
from parrainage.core import events
from parrainage.core.scheduler import END_DISCOUNT_HOOK, PROCESS_DISCOUNT_HOOK, RETRY_DISCOUNT_HOOK
from parrainage.schemas.discount import DiscountOperationResult
from parrainage.services.container import build_services

logger = logging.getLogger(__name__)


def mark_and_schedule(services, order_id=9001, subscription_id=9100):
    assert services.processor.mark_parrainage_order(order_id) is True
    assert services.processor.schedule_parrain_discount(subscription_id) is True


def test_marking_is_local_only(services, referral_setup, fake_scheduler, captured):
    """Пометка заказа пишет только метаданные: ни задач, ни событий."""
    assert services.processor.mark_parrainage_order(9001) is True

    order = services.store.get(9001)
    assert order.get_meta(c.META_PENDING_DISCOUNT) == "4521"
    assert order.get_meta(c.META_WORKFLOW_STATUS) == c.WORKFLOW_PENDING
    assert order.get_meta(c.META_MARKED_DATE) is not None
    assert fake_scheduler.calls == []
    assert captured.received == []


def test_malformed_code_is_not_marked(services, make_record):
    make_record(9002, "order", "processing", meta={c.META_REFERRAL_CODE: "45A1"})

    assert services.processor.mark_parrainage_order(9002) is False
    assert services.store.get(9002).get_meta(c.META_WORKFLOW_STATUS) is None


def test_schedule_sets_scheduled_status(services, referral_setup, fake_scheduler):
    mark_and_schedule(services)

    calls = fake_scheduler.calls_for(PROCESS_DISCOUNT_HOOK)
    assert len(calls) == 1
    assert calls[0]["args"] == [9001, 9100, 1]
    order = services.store.get(9001)
    assert order.get_meta(c.META_WORKFLOW_STATUS) == c.WORKFLOW_SCHEDULED
    assert order.get_meta(c.META_SCHEDULED_TIME) is not None


def test_schedule_requires_pending_order(services, referral_setup, fake_scheduler):
    # Без пометки заказа планировать нечего
    assert services.processor.schedule_parrain_discount(9100) is False
    assert fake_scheduler.calls == []


def test_scheduling_failure_marks_cron_failed(services, referral_setup, fake_scheduler, captured):
    """Тест-кейс: планировщик недоступен - заказ ждет оператора, скидка сразу не применяется."""
    logger.info("--- SCENARIO: scheduler failure ---")
    services.processor.mark_parrainage_order(9001)
    fake_scheduler.fail = True

    assert services.processor.schedule_parrain_discount(9100) is False

    order = services.store.get(9001)
    assert order.get_meta(c.META_WORKFLOW_STATUS) == c.WORKFLOW_CRON_FAILED
    assert order.get_meta(c.META_CRON_FAILURE_DATE) is not None
    assert len(captured.named(events.CRON_FAILURE)) == 1
    assert services.store.get(4521).get_total() == Decimal("30.00")


def test_processing_applies_discount_and_schedules_end(services, referral_setup, fake_scheduler, captured):
    logger.info("--- SCENARIO: deferred processing applies the discount ---")
    mark_and_schedule(services)

    result = services.processor.process_parrain_discount(9001, 9100, 1)

    assert result.success is True
    assert result.status == c.WORKFLOW_APPLIED
    assert result.calculations[0].discount_amount == Decimal("3.00")

    parrain = services.store.get(4521)
    logger.info(f"Parrain total = {parrain.get_total()}. Expected = 27.00")
    assert parrain.get_total() == Decimal("27.00")

    order = services.store.get(9001)
    assert order.get_meta(c.META_WORKFLOW_STATUS) == c.WORKFLOW_APPLIED
    assert order.get_meta(c.META_PROCESSED) is not None
    assert order.get_meta(c.META_APPLIED) is not None
    assert order.get_meta(c.META_END_SCHEDULED) is not None
    assert order.get_meta(c.META_PENDING_DISCOUNT) is None
    assert order.get_meta(c.META_SCHEDULED_TIME) is None

    end_calls = fake_scheduler.calls_for(END_DISCOUNT_HOOK)
    assert len(end_calls) == 1
    assert end_calls[0]["args"] == [4521, 9100]
    assert len(captured.named(events.DISCOUNT_PROCESSED)) == 1


def test_stale_job_after_processing_is_noop(services, referral_setup, captured):
    mark_and_schedule(services)
    services.processor.process_parrain_discount(9001, 9100, 1)

    again = services.processor.process_parrain_discount(9001, 9100, 1)

    assert again.skipped is True
    assert again.reason == "already_processed"
    assert services.store.get(4521).get_total() == Decimal("27.00")
    assert len(captured.named(events.DISCOUNT_PROCESSED)) == 1


def test_processing_skipped_when_filleul_not_active(services, referral_setup, make_record):
    mark_and_schedule(services)
    make_record(9100, "subscription", "cancelled")

    result = services.processor.process_parrain_discount(9001, 9100, 1)

    assert result.skipped is True
    assert result.reason == "filleul_not_active"
    assert services.store.get(4521).get_total() == Decimal("30.00")


def test_retry_succeeds_on_third_attempt(services, referral_setup, fake_scheduler, captured, mocker):
    """Тест-кейс: два сбоя расчета, успех на третьей попытке."""
    logger.info("--- SCENARIO: retries ---")
    mark_and_schedule(services)

    calculator = services.calculator
    real_calculate = calculator.calculate_parrain_discount
    attempts = []

    def flaky(*args, **kwargs):
        attempts.append(args)
        if len(attempts) < 3:
            return None
        return real_calculate(*args, **kwargs)

    mocker.patch.object(calculator, "calculate_parrain_discount", side_effect=flaky)

    first = services.processor.process_parrain_discount(9001, 9100, 1)
    assert first.reason == "retry_scheduled"
    second = services.processor.retry_failed_discount(9001, 9100, 2, first.error)
    assert second.reason == "retry_scheduled"
    third = services.processor.retry_failed_discount(9001, 9100, 3, second.error)

    assert third.success is True
    assert third.status == c.WORKFLOW_APPLIED
    retry_calls = fake_scheduler.calls_for(RETRY_DISCOUNT_HOOK)
    assert [call["args"][2] for call in retry_calls] == [2, 3]
    assert services.store.get(4521).get_total() == Decimal("27.00")
    assert captured.named(events.PROCESSING_FAILED) == []


def test_exhausted_retries_end_in_error(services, referral_setup, make_record, fake_scheduler, captured):
    """Тест-кейс: parrain неактивен, после трех попыток заказ в статусе error."""
    logger.info("--- SCENARIO: max retries ---")
    mark_and_schedule(services)
    make_record(4521, "subscription", "cancelled")

    first = services.processor.process_parrain_discount(9001, 9100, 1)
    second = services.processor.retry_failed_discount(9001, 9100, 2, first.error)
    third = services.processor.retry_failed_discount(9001, 9100, 3, second.error)

    assert first.reason == second.reason == "retry_scheduled"
    assert third.reason == "max_retries_reached"
    assert third.status == c.WORKFLOW_ERROR
    assert len(fake_scheduler.calls_for(RETRY_DISCOUNT_HOOK)) == 2

    order = services.store.get(9001)
    assert order.get_meta(c.META_WORKFLOW_STATUS) == c.WORKFLOW_ERROR
    assert "No eligible product" in order.get_meta(c.META_FINAL_ERROR)
    assert len(captured.named(events.PROCESSING_FAILED)) == 1
    assert services.store.get(4521).get_total() == Decimal("30.00")


def test_simulation_mode_keeps_price(db_session, calculator, fake_scheduler, bus, referral_setup):
    services = build_services(db_session, calculator=calculator, scheduler=fake_scheduler, event_bus=bus, simulation_mode=True)
    mark_and_schedule(services)

    result = services.processor.process_parrain_discount(9001, 9100, 1)

    assert result.status == c.WORKFLOW_SIMULATED
    assert services.store.get(4521).get_total() == Decimal("30.00")
    order = services.store.get(9001)
    assert order.get_meta(c.META_CALCULATED) is not None
    assert order.get_meta(c.META_CALCULATED_DISCOUNTS)[0]["discount_amount"] == "3.00"
    assert "Remise parrain calculée : 3.00 EUR (simulation)" in order.get_notes()
    assert fake_scheduler.calls_for(END_DISCOUNT_HOOK) == []


def test_end_hook_removes_discount(services, referral_setup):
    mark_and_schedule(services)
    services.processor.process_parrain_discount(9001, 9100, 1)

    result = services.processor.end_parrain_discount(4521, 9100)

    assert result.success is True
    parrain = services.store.get(4521)
    assert parrain.get_total() == Decimal("30.00")
    assert parrain.get_meta(c.META_DISCOUNT_STATUS) == c.DISCOUNT_EXPIRED


def test_requeue_after_cron_failure(services, referral_setup, fake_scheduler):
    services.processor.mark_parrainage_order(9001)
    fake_scheduler.fail = True
    services.processor.schedule_parrain_discount(9100)
    fake_scheduler.fail = False

    assert services.processor.requeue_order(9001) is True

    order = services.store.get(9001)
    assert order.get_meta(c.META_WORKFLOW_STATUS) == c.WORKFLOW_SCHEDULED
    assert order.get_meta(c.META_REQUEUED_DATE) is not None
    assert order.get_meta(c.META_CRON_FAILURE_DATE) is None
    assert len(fake_scheduler.calls_for(PROCESS_DISCOUNT_HOOK)) == 1


def test_requeue_refused_for_active_workflow(services, referral_setup):
    services.processor.mark_parrainage_order(9001)

    assert services.processor.requeue_order(9001) is False
    assert services.store.get(9001).get_meta(c.META_WORKFLOW_STATUS) == c.WORKFLOW_PENDING


def test_storage_failure_during_apply_is_retried(services, referral_setup, fake_scheduler, captured, mocker):
    """Тест-кейс: системный сбой применения идет по пути повторов, затем error и оповещение."""
    logger.info("--- SCENARIO: storage failure on apply ---")
    mark_and_schedule(services)
    mocker.patch.object(services.discount_manager, "apply_discount", return_value=DiscountOperationResult(
        success=False, parrain_id=4521, error="database is locked", error_type="system",
    ))

    first = services.processor.process_parrain_discount(9001, 9100, 1)

    assert first.reason == "retry_scheduled"
    assert len(fake_scheduler.calls_for(RETRY_DISCOUNT_HOOK)) == 1
    order = services.store.get(9001)
    assert order.get_meta(c.META_WORKFLOW_STATUS) == c.WORKFLOW_SCHEDULED
    assert order.get_meta(c.META_PROCESSED) is None

    second = services.processor.retry_failed_discount(9001, 9100, 2, first.error)
    third = services.processor.retry_failed_discount(9001, 9100, 3, second.error)

    assert second.reason == "retry_scheduled"
    assert third.status == c.WORKFLOW_ERROR
    assert "database is locked" in services.store.get(9001).get_meta(c.META_FINAL_ERROR)
    assert len(captured.named(events.PROCESSING_FAILED)) == 1


def test_storage_failure_recovers_on_retry(services, referral_setup, fake_scheduler, mocker):
    mark_and_schedule(services)
    apply_discount = services.discount_manager.apply_discount
    outcomes = [
        DiscountOperationResult(success=False, parrain_id=4521, error="connection reset", error_type="system"),
    ]

    def flaky(*args, **kwargs):
        if outcomes:
            return outcomes.pop(0)
        return apply_discount(*args, **kwargs)

    mocker.patch.object(services.discount_manager, "apply_discount", side_effect=flaky)

    first = services.processor.process_parrain_discount(9001, 9100, 1)
    second = services.processor.retry_failed_discount(9001, 9100, 2, first.error)

    assert first.reason == "retry_scheduled"
    assert second.status == c.WORKFLOW_APPLIED
    assert services.store.get(4521).get_total() == Decimal("27.00")


def test_requeue_after_application_failure(services, referral_setup, fake_scheduler, mocker):
    mark_and_schedule(services)
    mocker.patch.object(services.discount_manager, "apply_discount", return_value=DiscountOperationResult(
        success=False, parrain_id=4521, error="Discount amount must be positive", error_type="validation",
    ))

    failed = services.processor.process_parrain_discount(9001, 9100, 1)

    assert failed.status == c.WORKFLOW_APPLICATION_FAILED
    assert fake_scheduler.calls_for(RETRY_DISCOUNT_HOOK) == []

    mocker.stopall()
    assert services.processor.requeue_order(9001) is True

    order = services.store.get(9001)
    assert order.get_meta(c.META_WORKFLOW_STATUS) == c.WORKFLOW_SCHEDULED
    assert order.get_meta(c.META_PROCESSED) is None
    assert order.get_meta(c.META_APPLICATION_ERROR) is None
    assert len(fake_scheduler.calls_for(PROCESS_DISCOUNT_HOOK)) == 2

    result = services.processor.process_parrain_discount(9001, 9100, 1)

    assert result.status == c.WORKFLOW_APPLIED
    assert services.store.get(4521).get_total() == Decimal("27.00")
