from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest


resolver_duration_seconds = Histogram(
    "rowguard_resolver_duration_seconds",
    "Context resolver duration in seconds",
    ["resolver", "status"],
)

resolver_cache_hit_total = Counter(
    "rowguard_resolver_cache_hit_total",
    "Context resolver cache hits",
    ["resolver"],
)

resolver_cache_miss_total = Counter(
    "rowguard_resolver_cache_miss_total",
    "Context resolver cache misses",
    ["resolver"],
)

resolved_key_collisions_total = Counter(
    "rowguard_resolved_key_collisions_total",
    "Keys emitted by more than one resolver during a merge",
)

rebac_decisions_total = Counter(
    "rowguard_rebac_decisions_total",
    "Relationship policy decisions by outcome",
    ["table", "operation", "decision"],
)

fls_masked_fields_count = Counter(
    "rowguard_fls_masked_fields_count",
    "Total FLS-masked fields",
    ["table"],
)

fls_omitted_fields_count = Counter(
    "rowguard_fls_omitted_fields_count",
    "Total FLS-omitted fields",
    ["table"],
)

fls_denied_write_fields_count = Counter(
    "rowguard_fls_denied_write_fields_count",
    "Total fields rejected or stripped from writes by FLS",
    ["table"],
)

audit_events_total = Counter(
    "rowguard_audit_events_total",
    "Audit events accepted for delivery",
    ["decision"],
)

audit_flush_failures_total = Counter(
    "rowguard_audit_flush_failures_total",
    "Audit adapter delivery failures",
)


def observe_resolver(resolver: str, status: str, duration: float) -> None:
    resolver_duration_seconds.labels(resolver=resolver, status=status).observe(duration)


def observe_resolver_cache_hit(resolver: str) -> None:
    resolver_cache_hit_total.labels(resolver=resolver).inc()


def observe_resolver_cache_miss(resolver: str) -> None:
    resolver_cache_miss_total.labels(resolver=resolver).inc()


def observe_resolved_key_collision(count: int = 1) -> None:
    if count > 0:
        resolved_key_collisions_total.inc(count)


def observe_rebac_decision(table: str, operation: str, decision: str) -> None:
    rebac_decisions_total.labels(table=table, operation=operation, decision=decision).inc()


def observe_fls_field_counts(table: str, masked_count: int, omitted_count: int) -> None:
    if masked_count > 0:
        fls_masked_fields_count.labels(table=table).inc(masked_count)
    if omitted_count > 0:
        fls_omitted_fields_count.labels(table=table).inc(omitted_count)


def observe_fls_denied_writes(table: str, count: int) -> None:
    if count > 0:
        fls_denied_write_fields_count.labels(table=table).inc(count)


def observe_audit_event(decision: str) -> None:
    audit_events_total.labels(decision=decision).inc()


def observe_audit_flush_failure() -> None:
    audit_flush_failures_total.inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
