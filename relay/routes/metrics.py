"""
Prometheus metrics endpoint.

Exposes receiver and delivery metrics for monitoring.
"""
from fastapi import APIRouter, Response
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

router = APIRouter()

# ============================================
# HTTP Request Metrics
# ============================================

http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status']
)

http_request_duration = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# ============================================
# Receiver Metrics
# ============================================

webhooks_received = Counter(
    'webhooks_received_total',
    'Total webhooks admitted and queued',
    ['tier']
)

webhooks_rejected = Counter(
    'webhooks_rejected_total',
    'Total webhooks rejected at the receiver',
    ['reason']
)

rate_limit_exceeded = Counter(
    'rate_limit_exceeded_total',
    'Total receiver requests blocked by rate limiting',
    ['tier']
)

# ============================================
# Delivery Metrics
# ============================================

delivery_attempts = Counter(
    'webhook_delivery_attempts_total',
    'Total outbound delivery attempts',
    ['outcome']
)

delivery_duration = Histogram(
    'webhook_delivery_duration_seconds',
    'Outbound delivery round-trip time in seconds',
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

retries_scheduled = Counter(
    'webhook_retries_scheduled_total',
    'Total delivery retries scheduled'
)

deliveries_failed = Counter(
    'webhook_deliveries_failed_total',
    'Total deliveries finalized as failed',
    ['reason']
)


# ============================================
# Metrics Helper Functions
# ============================================

def track_request(method: str, endpoint: str, status: int, duration_seconds: float):
    """
    Record HTTP request metrics.
    
    Call this after each request.
    """
    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status=status
    ).inc()
    
    http_request_duration.labels(
        method=method,
        endpoint=endpoint
    ).observe(duration_seconds)


def track_webhook_received(tier: str):
    """Record a webhook being admitted."""
    webhooks_received.labels(tier=tier).inc()


def track_webhook_rejected(reason: str):
    """Record a webhook rejected by the receiver."""
    webhooks_rejected.labels(reason=reason).inc()


def track_rate_limit_exceeded(tier: str):
    """Record a rate limit block."""
    rate_limit_exceeded.labels(tier=tier).inc()


def track_delivery_attempt(success: bool, duration_seconds: float | None = None):
    """Record one outbound attempt."""
    delivery_attempts.labels(outcome="success" if success else "failure").inc()
    if duration_seconds is not None:
        delivery_duration.observe(duration_seconds)


def track_retry_scheduled():
    """Record a retry being scheduled."""
    retries_scheduled.inc()


def track_delivery_failed(reason: str):
    """Record a delivery finalized as failed."""
    deliveries_failed.labels(reason=reason).inc()


# ============================================
# Prometheus Endpoint
# ============================================

@router.get("/metrics")
async def metrics():
    """
    Prometheus metrics endpoint.
    
    Returns all registered metrics in Prometheus format.
    """
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)
