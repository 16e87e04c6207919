"""Routing metrics.

Metrics:
  1. threadline.routing.decision (counter)
     - Attributes: method, outcome (resolved|created|unassigned|unresolved|error)
  2. threadline.routing.strategy_error (counter)
     - Attributes: strategy
  3. threadline.routing.thread_created (counter)
  4. threadline.routing.decision_log_write_failed (counter)
  5. threadline.routing.latency_ms (histogram)
     - Attributes: outcome
  6. threadline.identity.cache (counter)
     - Attributes: result (hit|miss)
  7. threadline.identity.integrity_anomaly (counter)
  8. threadline.retry.attempt (counter)
     - Attributes: outcome (succeeded|failed|dead_lettered)
  9. threadline.retry.dead_lettered (counter)

Cardinality policy: never attach organization ids, sender identifiers,
thread ids or message ids. Attribute values are bounded to known sets.
"""

from __future__ import annotations

from opentelemetry import metrics

_METER_NAME = "threadline.routing"

_ALLOWED_METHODS = frozenset({"identity", "metadata", "context", "created", "manual"})
_ALLOWED_OUTCOMES = frozenset({"resolved", "created", "unassigned", "unresolved", "error"})
_ALLOWED_STRATEGIES = frozenset({"identity", "metadata", "context"})
_ALLOWED_CACHE_RESULTS = frozenset({"hit", "miss"})
_ALLOWED_RETRY_OUTCOMES = frozenset({"succeeded", "failed", "dead_lettered"})


def _bounded(value: str | None, allowed: frozenset[str]) -> str:
    if value is not None and str(value) in allowed:
        return str(value)
    return "unknown"


class RoutingTelemetry:
    """Container for routing and retry OpenTelemetry instruments."""

    def __init__(self) -> None:
        meter = metrics.get_meter(_METER_NAME)

        self.decision = meter.create_counter(
            "threadline.routing.decision",
            unit="1",
            description="Routing attempts by terminal method and outcome.",
        )
        self.strategy_error = meter.create_counter(
            "threadline.routing.strategy_error",
            unit="1",
            description="Strategy evaluations that raised and were treated as no match.",
        )
        self.thread_created = meter.create_counter(
            "threadline.routing.thread_created",
            unit="1",
            description="Threads created because no strategy matched.",
        )
        self.decision_log_write_failed = meter.create_counter(
            "threadline.routing.decision_log_write_failed",
            unit="1",
            description="Routing decisions dropped because the log store failed.",
        )
        self.latency_ms = meter.create_histogram(
            "threadline.routing.latency_ms",
            unit="ms",
            description="End-to-end routing latency in milliseconds.",
        )
        self.identity_cache = meter.create_counter(
            "threadline.identity.cache",
            unit="1",
            description="Identity lookups served from or missing the cache.",
        )
        self.identity_integrity_anomaly = meter.create_counter(
            "threadline.identity.integrity_anomaly",
            unit="1",
            description="Lookups that matched more than one identity link.",
        )
        self.retry_attempt = meter.create_counter(
            "threadline.retry.attempt",
            unit="1",
            description="Retry sweep re-routing attempts by outcome.",
        )
        self.dead_lettered = meter.create_counter(
            "threadline.retry.dead_lettered",
            unit="1",
            description="Pending retry records moved to the dead-letter store.",
        )

    def record_decision(self, *, method: str, outcome: str, latency_ms: float) -> None:
        attrs = {
            "method": _bounded(method, _ALLOWED_METHODS),
            "outcome": _bounded(outcome, _ALLOWED_OUTCOMES),
        }
        self.decision.add(1, attrs)
        self.latency_ms.record(latency_ms, {"outcome": attrs["outcome"]})

    def record_strategy_error(self, *, strategy: str) -> None:
        self.strategy_error.add(1, {"strategy": _bounded(strategy, _ALLOWED_STRATEGIES)})

    def record_thread_created(self) -> None:
        self.thread_created.add(1)

    def record_decision_log_write_failed(self) -> None:
        self.decision_log_write_failed.add(1)

    def record_identity_cache(self, *, hit: bool) -> None:
        result = "hit" if hit else "miss"
        self.identity_cache.add(1, {"result": _bounded(result, _ALLOWED_CACHE_RESULTS)})

    def record_identity_integrity_anomaly(self) -> None:
        self.identity_integrity_anomaly.add(1)

    def record_retry_attempt(self, *, outcome: str) -> None:
        self.retry_attempt.add(1, {"outcome": _bounded(outcome, _ALLOWED_RETRY_OUTCOMES)})

    def record_dead_lettered(self) -> None:
        self.dead_lettered.add(1)


_ROUTING_TELEMETRY: RoutingTelemetry | None = None


def get_routing_telemetry() -> RoutingTelemetry:
    """Return the process-level routing telemetry singleton."""
    global _ROUTING_TELEMETRY
    if _ROUTING_TELEMETRY is None:
        _ROUTING_TELEMETRY = RoutingTelemetry()
    return _ROUTING_TELEMETRY


def reset_routing_telemetry_for_tests() -> None:
    """Test helper to reset the singleton after meter provider changes."""
    global _ROUTING_TELEMETRY
    _ROUTING_TELEMETRY = None


__all__ = [
    "RoutingTelemetry",
    "get_routing_telemetry",
    "reset_routing_telemetry_for_tests",
]
