# parrainage/core/constants.py
# Ключи метаданных и статусы, общие для всех сервисов

# --- Заказ filleul ---
META_REFERRAL_CODE = "_billing_parrain_code"
META_PENDING_DISCOUNT = "_pending_parrain_discount"
META_WORKFLOW_STATUS = "_parrainage_workflow_status"
META_MARKED_DATE = "_parrainage_marked_date"
META_SCHEDULED_TIME = "_parrainage_scheduled_time"
META_CALCULATED = "_tb_parrainage_calculated"
META_PROCESSED = "_tb_parrainage_processed"
META_APPLIED = "_tb_parrainage_applied"
META_CALCULATED_DISCOUNTS = "_parrainage_calculated_discounts"
META_CALCULATION_DATE = "_parrainage_calculation_date"
META_FINAL_ERROR = "_parrainage_final_error"
META_CRON_FAILURE_DATE = "_parrainage_cron_failure_date"
META_END_SCHEDULED = "_tb_parrainage_end_scheduled"
META_APPLICATION_ERROR = "_tb_parrainage_application_error"
META_CLEANUP_DATE = "_parrainage_cleanup_date"
META_REQUEUED_DATE = "_parrainage_requeued_date"

WORKFLOW_PENDING = "pending"
WORKFLOW_SCHEDULED = "scheduled"
WORKFLOW_CALCULATED = "calculated"
WORKFLOW_SIMULATED = "simulated"
WORKFLOW_APPLIED = "applied"
WORKFLOW_APPLICATION_FAILED = "application_failed"
WORKFLOW_ERROR = "error"
WORKFLOW_CRON_FAILED = "cron_failed"

WORKFLOW_STATUSES = (
    WORKFLOW_PENDING,
    WORKFLOW_SCHEDULED,
    WORKFLOW_CALCULATED,
    WORKFLOW_SIMULATED,
    WORKFLOW_APPLIED,
    WORKFLOW_APPLICATION_FAILED,
    WORKFLOW_ERROR,
    WORKFLOW_CRON_FAILED,
)

# Статусы, из которых оператор может вернуть заказ к обработке
REQUEUE_ALLOWED_STATUSES = (WORKFLOW_ERROR, WORKFLOW_CRON_FAILED, WORKFLOW_APPLICATION_FAILED)

# --- Абонемент parrain: запись о скидке ---
META_DISCOUNT_ACTIVE = "_tb_parrainage_discount_active"
META_DISCOUNT_STATUS = "_tb_parrainage_discount_status"
META_DISCOUNT_AMOUNT = "_tb_parrainage_discount_amount"
META_ORIGINAL_PRICE = "_tb_parrainage_original_price"
META_ORIGINAL_PRICE_DATE = "_tb_parrainage_original_price_date"
META_LAST_ORIGINAL_PRICE = "_tb_parrainage_last_original_price"
META_DISCOUNT_START = "_tb_parrainage_discount_start"
META_DISCOUNT_END_DATE = "_tb_parrainage_discount_end_date"
META_DISCOUNT_FILLEUL_ID = "_tb_parrainage_filleul_id"
META_DISCOUNT_FILLEUL_ORDER_ID = "_tb_parrainage_filleul_order_id"
META_DISCOUNT_REMOVED_DATE = "_tb_parrainage_discount_removed_date"
META_DISCOUNT_REMOVAL_REASON = "_tb_parrainage_discount_removal_reason"
META_REACTIVATION_DATE = "_tb_parrainage_reactivation_date"

DISCOUNT_APPLIED = "applied"
DISCOUNT_SUSPENDED = "suspended"
DISCOUNT_REACTIVATED = "reactivated"
DISCOUNT_EXPIRED = "expired"
# Старое значение статуса, встречается в ранее созданных записях
DISCOUNT_ACTIVE_LEGACY = "active"

# Скидка, при которой цена абонемента сейчас уменьшена
PRICE_REDUCED_STATUSES = (DISCOUNT_APPLIED, DISCOUNT_REACTIVATED, DISCOUNT_ACTIVE_LEGACY)
OPEN_DISCOUNT_STATUSES = PRICE_REDUCED_STATUSES + (DISCOUNT_SUSPENDED,)

# --- Снимок при приостановке ---
META_SUSPENDED_DISCOUNT = "_tb_parrainage_suspended_discount"
META_PRICE_BEFORE_SUSPENSION = "_tb_parrainage_original_price_before_suspension"
META_SUSPENSION_DATE = "_tb_parrainage_suspension_date"
META_SUSPENSION_CAUSE = "_tb_parrainage_suspension_cause"
META_DISCOUNTED_TOTAL_AT_SUSPENSION = "_tb_parrainage_discounted_total_at_suspension"

SNAPSHOT_KEYS = (
    META_SUSPENDED_DISCOUNT,
    META_PRICE_BEFORE_SUSPENSION,
    META_SUSPENSION_DATE,
    META_SUSPENSION_CAUSE,
    META_DISCOUNTED_TOTAL_AT_SUSPENSION,
)

# --- Абонемент filleul: счетчик оплат ---
META_BILLING_COUNT = "_filleul_facturation_count"
META_STANDARD_PRICE = "_filleul_prix_standard_historique"
META_FIRST_BILLING_DATE = "_filleul_date_premiere_facturation"
META_FILLEUL_DISCOUNT_EXPIRED = "_filleul_remise_expiree"
META_FILLEUL_EXPIRATION_DATE = "_filleul_date_expiration_remise"

# --- Статусы абонементов WooCommerce ---
SUSPENSION_TRIGGER_STATUSES = ("cancelled", "on-hold", "expired", "pending-cancel")
REACTIVATION_TRIGGER_STATUS = "active"
