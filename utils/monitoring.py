"""
Prometheus metrics for the access-control core.

Counters are module-level and registered with the default prometheus_client
registry, so they are exported by any process-wide metrics endpoint.
"""

from prometheus_client import Counter

PERMISSION_DECISIONS = Counter(
    'permission_decisions_total',
    'Permission decisions by outcome',
    ['outcome']
)

PERMISSION_CACHE_EVENTS = Counter(
    'permission_cache_events_total',
    'Permission cache hits, misses and invalidations',
    ['event']
)

CONDITION_DEFECTS = Counter(
    'permission_condition_defects_total',
    'Conditions with no evaluator (registry and evaluator out of sync)',
    ['condition_type']
)

SCOPE_DEFECTS = Counter(
    'permission_scope_defects_total',
    'Permission scopes with no resolver (registry and resolver out of sync)',
    ['scope']
)

ASSIGNMENT_STORE_FAILURES = Counter(
    'role_assignment_store_failures_total',
    'Role assignment store lookups that failed',
    ['store']
)


def record_decision(granted: bool) -> None:
    PERMISSION_DECISIONS.labels(outcome='granted' if granted else 'denied').inc()


def record_undeterminable() -> None:
    PERMISSION_DECISIONS.labels(outcome='undeterminable').inc()


def record_cache_event(event: str) -> None:
    PERMISSION_CACHE_EVENTS.labels(event=event).inc()


def record_condition_defect(condition_type: str) -> None:
    CONDITION_DEFECTS.labels(condition_type=condition_type).inc()


def record_scope_defect(scope: str) -> None:
    SCOPE_DEFECTS.labels(scope=scope).inc()


def record_store_failure(store: str) -> None:
    ASSIGNMENT_STORE_FAILURES.labels(store=store).inc()
