from prometheus_client import Counter, Histogram

# Business Metrics
hm_payments_total = Counter(
    "hm_payments_total",
    "Payments that reached a terminal or hand-off state",
    ["status", "provider"] # status: 'completed', 'processing', 'failed', 'rejected'
)

hm_payment_duration_seconds = Histogram(
    "hm_payment_duration_seconds",
    "Order payment processing duration in seconds"
)

hm_payment_errors_total = Counter(
    "hm_payment_errors_total",
    "Payment errors after classification",
    ["error_type", "retryable"]
)

hm_fraud_alerts_total = Counter(
    "hm_fraud_alerts_total",
    "Fraud alerts raised",
    ["severity"]
)

hm_saga_compensation_total = Counter(
    "hm_saga_compensation_total",
    "Total saga compensations triggered",
    ["step_name"] # Labels: 'authorize', 'capture', ...
)

hm_pricing_suggestions_total = Counter(
    "hm_pricing_suggestions_total",
    "Pricing suggestions by source",
    ["source"] # Labels: 'oracle', 'fallback', 'cache'
)

hm_webhooks_total = Counter(
    "hm_webhooks_total",
    "Gateway webhooks received",
    ["event_type", "outcome"]
)
