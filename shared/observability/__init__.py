from .setup import setup_observability
from .metrics import (
    hm_payments_total,
    hm_payment_duration_seconds,
    hm_payment_errors_total,
    hm_fraud_alerts_total,
    hm_saga_compensation_total,
    hm_pricing_suggestions_total,
    hm_webhooks_total,
)
