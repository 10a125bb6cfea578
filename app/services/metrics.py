"""Prometheus counters for the guest order lookup path."""

from typing import Optional

from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Counter, generate_latest

RATE_LIMIT_SCOPES = ("ip", "user", "order", "backend")

registry = CollectorRegistry()

order_lookup_rate_limited = Counter(
    "order_lookup_rate_limited",
    "Guest order lookups rejected by a rate limit, by scope (backend = store API 429).",
    ["scope"],
    registry=registry,
)
order_lookup_rate_limit_degraded = Counter(
    "order_lookup_rate_limit_degraded",
    "Guest order lookups allowed without a rate limit check because Redis failed.",
    registry=registry,
)
order_lookup_verification_failed = Counter(
    "order_lookup_verification_failed",
    "Guest order lookups where the order id and identity factors did not match.",
    registry=registry,
)

# Every scope is exported from the start, at zero.
for _scope in RATE_LIMIT_SCOPES:
    order_lookup_rate_limited.labels(scope=_scope)


def record_rate_limited(scope: Optional[str]) -> None:
    if scope not in RATE_LIMIT_SCOPES:
        return
    order_lookup_rate_limited.labels(scope=scope).inc()


def record_rate_limit_degraded() -> None:
    order_lookup_rate_limit_degraded.inc()


def record_verification_failed() -> None:
    order_lookup_verification_failed.inc()


def render_metrics() -> tuple[bytes, str]:
    """Exposition body and content type for the /metrics endpoint."""
    return generate_latest(registry), CONTENT_TYPE_LATEST
