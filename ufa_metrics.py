"""
UFA Chaincode - Prometheus Metrics
Observability for agreement lifecycle, reconciliation and storage
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry

# Create custom registry
metrics_registry = CollectorRegistry()

# ============================================
# BUSINESS METRICS
# ============================================

agreement_created_counter = Counter(
    'ufa_agreements_created_total',
    'Total number of agreements created',
    ['role'],
    registry=metrics_registry
)

agreement_updated_counter = Counter(
    'ufa_agreements_updated_total',
    'Total number of agreement updates',
    registry=metrics_registry
)

agreement_rejected_counter = Counter(
    'ufa_agreements_rejected_total',
    'Total number of agreement creations rejected by validation',
    registry=metrics_registry
)

reconciliation_counter = Counter(
    'ufa_invoice_reconciliations_total',
    'Total number of invoice pair reconciliations',
    ['result'],  # valid, rejected
    registry=metrics_registry
)

invoices_raised_counter = Counter(
    'ufa_invoices_raised_total',
    'Total number of invoices recorded against agreements',
    registry=metrics_registry
)

invoice_amount_histogram = Histogram(
    'ufa_invoice_amount',
    'Accepted invoice pair amounts',
    buckets=[100, 1000, 5000, 10000, 50000, 100000, 500000, 1000000, 10000000],
    registry=metrics_registry
)

# ============================================
# INVARIANT ENFORCEMENT METRICS
# ============================================

rule_check_counter = Counter(
    'ufa_rule_checks_total',
    'Total number of rule checks',
    ['invariant_id', 'check_type', 'result'],
    registry=metrics_registry
)

# ============================================
# STORAGE METRICS
# ============================================

store_failure_counter = Counter(
    'ufa_store_failures_total',
    'State store operations that failed',
    ['operation'],  # get, put, conflict
    registry=metrics_registry
)

ledger_integrity_gauge = Gauge(
    'ufa_decision_ledger_integrity',
    'Decision ledger integrity (1=verified, 0=compromised)',
    registry=metrics_registry
)

# ============================================
# HELPER FUNCTIONS
# ============================================

def record_rule_check(invariant_id: str, check_type: str, result: bool):
    """Record rule check metrics."""
    rule_check_counter.labels(
        invariant_id=invariant_id,
        check_type=check_type,
        result="passed" if result else "failed"
    ).inc()


def record_reconciliation(valid: bool):
    reconciliation_counter.labels(result="valid" if valid else "rejected").inc()


def record_store_failure(operation: str):
    store_failure_counter.labels(operation=operation).inc()


def update_ledger_integrity(verified: bool):
    ledger_integrity_gauge.set(1 if verified else 0)
