"""
Business Management Service - Prometheus Metrics
Observability for purchases, reservations and invariant enforcement
"""

from prometheus_client import Counter, Histogram, Gauge, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# BUSINESS METRICS
# ============================================

invoice_created_counter = Counter(
    'bms_invoices_created_total',
    'Total number of invoices created',
    ['business_id'],
    registry=metrics_registry
)

purchase_rejected_counter = Counter(
    'bms_purchases_rejected_total',
    'Total number of purchases aborted before commit',
    ['reason'],
    registry=metrics_registry
)

invoice_amount_histogram = Histogram(
    'bms_invoice_amount',
    'Invoice totals in currency units',
    buckets=[1, 10, 50, 100, 500, 1000, 5000, 10000, 100000],
    registry=metrics_registry
)

# ============================================
# STOCK METRICS
# ============================================

reservation_counter = Counter(
    'bms_reservations_total',
    'Stock reservations by outcome',
    ['result'],  # reserved, insufficient_stock, not_found, invalid
    registry=metrics_registry
)

reserved_units_counter = Counter(
    'bms_reserved_units_total',
    'Units taken out of stock by reservations',
    registry=metrics_registry
)

# ============================================
# INVARIANT ENFORCEMENT METRICS
# ============================================

invariant_check_counter = Counter(
    'bms_invariant_checks_total',
    'Total number of invariant checks',
    ['invariant_id', 'check_type', 'result'],
    registry=metrics_registry
)

invariant_violation_counter = Counter(
    'bms_invariant_violations_total',
    'Total number of invariant violations',
    ['invariant_id', 'invariant_type', 'criticality'],
    registry=metrics_registry
)

system_health_gauge = Gauge(
    'bms_system_health_score',
    'Share of passed invariant checks (0-1)',
    registry=metrics_registry
)

# ============================================
# PERFORMANCE METRICS
# ============================================

api_request_duration_histogram = Histogram(
    'bms_api_request_duration_seconds',
    'API request duration',
    ['endpoint', 'method'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0],
    registry=metrics_registry
)

api_request_counter = Counter(
    'bms_api_requests_total',
    'Total API requests',
    ['endpoint', 'method', 'status_code'],
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

REJECTION_RESULTS = {
    'InsufficientStock': 'insufficient_stock',
    'NotFound': 'not_found',
    'ValidationError': 'invalid',
}

def record_invoice_created(business_id: str, amount: float, lines: int, reserved_units: int):
    """Record invoice creation metrics."""
    invoice_created_counter.labels(business_id=business_id).inc()
    invoice_amount_histogram.observe(amount)
    reservation_counter.labels(result="reserved").inc(lines)
    reserved_units_counter.inc(reserved_units)

def record_reservation(reserved_units: int):
    """Record a single-product reservation outside an invoice."""
    reservation_counter.labels(result="reserved").inc()
    reserved_units_counter.inc(reserved_units)

def record_rejection(kind: str):
    """Record an aborted purchase or reservation."""
    purchase_rejected_counter.labels(reason=kind).inc()
    result = REJECTION_RESULTS.get(kind)
    if result:
        reservation_counter.labels(result=result).inc()

def record_invariant_check(invariant_id: str, check_type: str, result: bool, invariant_type: str, criticality: str):
    """Record invariant check metrics."""
    invariant_check_counter.labels(
        invariant_id=invariant_id,
        check_type=check_type,
        result="passed" if result else "failed"
    ).inc()

    if not result:
        invariant_violation_counter.labels(
            invariant_id=invariant_id,
            invariant_type=invariant_type,
            criticality=criticality
        ).inc()

def record_api_request(endpoint: str, method: str, status_code: int, duration: float):
    """Record API request metrics."""
    api_request_counter.labels(
        endpoint=endpoint,
        method=method,
        status_code=status_code
    ).inc()
    api_request_duration_histogram.labels(
        endpoint=endpoint,
        method=method
    ).observe(duration)
