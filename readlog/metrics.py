from prometheus_client import Counter, generate_latest, CONTENT_TYPE_LATEST
from fastapi import Response

webhook_events_total = Counter(
    "readlog_webhook_events_total", "Billing webhook events processed", ["type", "outcome"]
)
credits_consumed_total = Counter(
    "readlog_ai_credits_consumed_total", "AI credits consumed", ["tier"]
)
credits_exhausted_total = Counter(
    "readlog_ai_credits_exhausted_total", "Credit use attempts rejected for exhaustion"
)
access_denied_total = Counter(
    "readlog_access_denied_total", "Gated operations denied", ["reason", "tier"]
)
credit_resets_total = Counter(
    "readlog_credit_resets_total", "Subscriptions whose credits were reset by the monthly job", ["tier"]
)
billing_errors_total = Counter(
    "readlog_billing_errors_total", "Failed calls to the billing provider", ["operation"]
)
reconciliation_issues_total = Counter(
    "readlog_reconciliation_issues_total", "Inconsistencies recorded for manual reconciliation", ["kind"]
)

def increment_webhook_event(event_type, outcome):
    webhook_events_total.labels(event_type, outcome).inc()

def metrics_endpoint():
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
