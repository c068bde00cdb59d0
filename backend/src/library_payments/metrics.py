"""Business metrics for Prometheus monitoring."""
from prometheus_client import Counter

# Payment metrics
payments_initiated_total = Counter(
    "payments_initiated_total",
    "Total payments created",
    labelnames=["payment_type", "currency", "method"],  # method: card, saved_card
)

payment_status_transitions_total = Counter(
    "payment_status_transitions_total",
    "Total payment status transitions",
    labelnames=["from_status", "to_status"],
)

payment_refunds_total = Counter(
    "payment_refunds_total",
    "Total refunds issued",
    labelnames=["kind", "currency"],  # kind: full, partial
)

payment_refund_amount_total = Counter(
    "payment_refund_amount_total",
    "Total refunded amount in the smallest currency unit",
    labelnames=["currency"],
)

payments_expired_total = Counter(
    "payments_expired_total",
    "Total pending payments failed after expiry",
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway API calls",
    labelnames=["operation", "outcome"],  # outcome: success, error, transport_error
)

gateway_token_refreshes_total = Counter(
    "gateway_token_refreshes_total",
    "Total OAuth token exchanges with the payment gateway",
    labelnames=["outcome"],
)

# Webhook metrics
callbacks_received_total = Counter(
    "payment_callbacks_received_total",
    "Total inbound gateway callbacks",
    labelnames=["outcome"],  # processed, duplicate, rejected, retry_queued, error
)

callback_retries_total = Counter(
    "payment_callback_retries_total",
    "Total callback retry attempts",
    labelnames=["outcome"],  # completed, retry_scheduled, failed
)
