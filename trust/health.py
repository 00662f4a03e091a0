"""Health snapshots for the trust pipeline and its collaborators."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Optional

from django.conf import settings
from django.utils import timezone

from presence_guard.celery import app as celery_app

from .compreface import CompreFaceClient
from .models import FraudAttempt, LivenessLog
from .types import LivenessStatus

logger = logging.getLogger(__name__)


def _isoformat_or_none(value: Optional[dt.datetime]) -> Optional[str]:
    """Return an ISO-8601 string for the datetime if provided."""

    if value is None:
        return None
    if timezone.is_naive(value):
        value = timezone.make_aware(value, timezone=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat()


def backend_health() -> Dict[str, Any]:
    """Report whether the recognition backend is configured and answering."""

    client = CompreFaceClient.from_settings()
    if client is None:
        return {"configured": False, "healthy": False, "mode": "fallback"}
    healthy = client.health_check()
    return {
        "configured": True,
        "healthy": healthy,
        "mode": "primary" if healthy else "fallback",
    }


def liveness_activity(*, hours: int = 24) -> Dict[str, Any]:
    """Summarise liveness outcomes over the trailing window."""

    since = timezone.now() - dt.timedelta(hours=hours)
    recent = LivenessLog.objects.filter(created_at__gte=since)
    counts = {status.value: recent.filter(result=status.value).count() for status in LivenessStatus if status.is_terminal}
    last = LivenessLog.objects.order_by("-created_at").first()
    return {
        "window_hours": hours,
        "counts": counts,
        "total": sum(counts.values()),
        "last_session": (
            None
            if last is None
            else {
                "subject_id": last.subject_id,
                "result": last.result,
                "confidence": last.confidence,
                "timestamp": _isoformat_or_none(last.created_at),
            }
        ),
    }


def fraud_activity(*, hours: int = 24) -> Dict[str, Any]:
    """Summarise recent fraud attempts and currently active blocks."""

    now = timezone.now()
    recent = FraudAttempt.objects.filter(created_at__gte=now - dt.timedelta(hours=hours))
    blocked_subjects = sorted(
        set(FraudAttempt.objects.active_blocks(now).values_list("subject_id", flat=True))
    )
    return {
        "window_hours": hours,
        "attempts": recent.count(),
        "blocked_subjects": blocked_subjects,
        "active_blocks": len(blocked_subjects),
    }


def worker_health() -> Dict[str, Any]:
    """Ping the Celery worker that runs the retention tasks."""

    broker_configured = bool(getattr(settings, "CELERY_BROKER_URL", None))
    if not broker_configured:
        return {"status": "not-configured", "workers": 0}

    try:
        responses = celery_app.control.ping(timeout=0.5)
    except Exception as exc:  # pragma: no cover - network dependent
        logger.warning("Celery ping failed: %s", exc)
        return {"status": "unreachable", "workers": 0, "error": str(exc)}

    return {"status": "online" if responses else "unreachable", "workers": len(responses)}


__all__ = ["backend_health", "fraud_activity", "liveness_activity", "worker_health"]
