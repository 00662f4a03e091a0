"""Prometheus metrics and alert history for the presence trust pipeline."""

from __future__ import annotations

import datetime as _dt
import logging
import threading
import time
from collections import deque
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

from django.conf import settings

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)

_STATE_LOCK = threading.Lock()
_ALERTS: deque[Dict[str, Any]] = deque()


def _max_alert_history() -> int:
    value = getattr(settings, "TRUST_ALERT_HISTORY", 50)
    try:
        numeric = int(value)
    except (TypeError, ValueError):  # pragma: no cover - defensive
        numeric = 50
    return max(1, numeric)


def _format_timestamp(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return _dt.datetime.fromtimestamp(ts, tz=_dt.timezone.utc).isoformat()


def _append_alert(
    event_type: str, severity: str, message: str, data: Optional[Dict[str, Any]] = None
) -> None:
    payload = {
        "timestamp": _format_timestamp(time.time()),
        "type": event_type,
        "severity": severity,
        "message": message,
        "data": data or {},
    }
    with _STATE_LOCK:
        _ALERTS.append(payload)
        max_alerts = _max_alert_history()
        while len(_ALERTS) > max_alerts:
            _ALERTS.popleft()


def _build_metrics() -> None:
    global REGISTRY
    global VERIFICATION_COUNTER
    global FALLBACK_COUNTER
    global FRAUD_COUNTER
    global LIVENESS_OUTCOME_COUNTER
    global ACTIVE_SESSIONS_GAUGE
    global BACKEND_LATENCY_HISTOGRAM

    REGISTRY = CollectorRegistry(auto_describe=True)

    VERIFICATION_COUNTER = Counter(
        "trust_verification_attempts",
        "Identity verification attempts by biometric mode and outcome",
        labelnames=("mode", "outcome"),
        registry=REGISTRY,
    )
    FALLBACK_COUNTER = Counter(
        "trust_biometric_fallback",
        "Biometric operations served by the degraded fallback comparator",
        labelnames=("operation",),
        registry=REGISTRY,
    )
    FRAUD_COUNTER = Counter(
        "trust_fraud_attempts",
        "Fraud attempts recorded by category and escalation action",
        labelnames=("attempt_type", "action"),
        registry=REGISTRY,
    )
    LIVENESS_OUTCOME_COUNTER = Counter(
        "trust_liveness_outcomes",
        "Terminal liveness session outcomes",
        labelnames=("result",),
        registry=REGISTRY,
    )
    ACTIVE_SESSIONS_GAUGE = Gauge(
        "trust_active_liveness_sessions",
        "Liveness sessions currently held in the live session table",
        registry=REGISTRY,
    )
    BACKEND_LATENCY_HISTOGRAM = Histogram(
        "trust_backend_latency_seconds",
        "Latency of calls to the external recognition backend",
        labelnames=("operation",),
        buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        registry=REGISTRY,
    )


_build_metrics()


def reset_for_tests() -> None:
    """Reset alert history and metrics (intended for test suites)."""

    with _STATE_LOCK:
        _ALERTS.clear()
    _build_metrics()


def _metric_value(name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
    labels = labels or {}
    sample = REGISTRY.get_sample_value(name, labels)
    if sample is None and name.endswith("_total"):
        sample = REGISTRY.get_sample_value(name.replace("_total", ""), labels)
    return sample


def record_verification(mode: str, outcome: str) -> None:
    VERIFICATION_COUNTER.labels(mode=mode, outcome=outcome).inc()


def record_fallback(operation: str, reason: Optional[str] = None) -> None:
    """Count a fallback and keep an alert so operators notice a degraded backend."""

    FALLBACK_COUNTER.labels(operation=operation).inc()
    message = f"Biometric {operation} served in fallback mode"
    logger.warning(
        message,
        extra={"event": "biometric_fallback", "operation": operation, "reason": reason},
    )
    _append_alert("biometric_fallback", "warning", message, {"operation": operation, "reason": reason})


def record_fraud_attempt(attempt_type: str, action: str) -> None:
    FRAUD_COUNTER.labels(attempt_type=attempt_type, action=action).inc()
    if action == "blocked":
        _append_alert(
            "subject_blocked",
            "error",
            f"Subject blocked after {attempt_type} attempt",
            {"attempt_type": attempt_type},
        )


def record_liveness_outcome(result: str) -> None:
    LIVENESS_OUTCOME_COUNTER.labels(result=result).inc()


def set_active_sessions(count: int) -> None:
    ACTIVE_SESSIONS_GAUGE.set(count)


@contextmanager
def observe_backend_call(operation: str) -> Iterator[None]:
    """Time a call to the recognition backend, including failed ones."""

    started = time.perf_counter()
    try:
        yield
    finally:
        BACKEND_LATENCY_HISTOGRAM.labels(operation=operation).observe(
            max(0.0, time.perf_counter() - started)
        )


def get_metrics_snapshot() -> Dict[str, Any]:
    """Return a serialisable snapshot of counters and the alert history."""

    with _STATE_LOCK:
        alerts = list(_ALERTS)

    verification: Dict[str, Dict[str, float]] = {}
    for mode in ("primary", "fallback", "none"):
        verification[mode] = {
            outcome: _metric_value(
                "trust_verification_attempts_total", {"mode": mode, "outcome": outcome}
            )
            or 0
            for outcome in ("verified", "rejected", "locked", "not_enrolled", "invalid_image")
        }
    liveness = {
        result: _metric_value("trust_liveness_outcomes_total", {"result": result}) or 0
        for result in ("passed", "failed", "inconclusive", "timeout")
    }
    fallback = {
        operation: _metric_value("trust_biometric_fallback_total", {"operation": operation}) or 0
        for operation in ("register", "verify", "identify")
    }
    return {
        "verification": verification,
        "liveness": liveness,
        "fallback": fallback,
        "active_sessions": _metric_value("trust_active_liveness_sessions") or 0,
        "alerts": alerts,
    }


def export_metrics() -> bytes:
    """Serialise the Prometheus metrics registry."""

    return generate_latest(REGISTRY)


def prometheus_content_type() -> str:
    """Expose the correct ``Content-Type`` for Prometheus responses."""

    return CONTENT_TYPE_LATEST


__all__ = [
    "export_metrics",
    "get_metrics_snapshot",
    "observe_backend_call",
    "prometheus_content_type",
    "record_fallback",
    "record_fraud_attempt",
    "record_liveness_outcome",
    "record_verification",
    "reset_for_tests",
    "set_active_sessions",
]
