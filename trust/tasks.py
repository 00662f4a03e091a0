"""Celery tasks keeping the trust tables within their retention windows."""

from __future__ import annotations

import logging

from celery import shared_task

from .models import GeoTrackingPoint, LivenessLog

logger = logging.getLogger(__name__)


@shared_task(bind=True, name="trust.tasks.prune_liveness_logs")
def prune_liveness_logs(self) -> dict:
    """Delete liveness outcomes older than ``LIVENESS_LOG_RETENTION_DAYS``."""

    deleted = LivenessLog.prune_expired()
    logger.info(
        "Pruned %d liveness log(s) (task_id=%s)",
        deleted,
        self.request.id or "",
        extra={"event": "liveness_logs_pruned"},
    )
    return {"deleted": deleted}


@shared_task(bind=True, name="trust.tasks.prune_location_samples")
def prune_location_samples(self) -> dict:
    """Delete location fixes older than ``LOCATION_SAMPLE_RETENTION_DAYS``."""

    deleted = GeoTrackingPoint.prune_expired()
    logger.info(
        "Pruned %d location sample(s) (task_id=%s)",
        deleted,
        self.request.id or "",
        extra={"event": "location_samples_pruned"},
    )
    return {"deleted": deleted}


__all__ = ["prune_liveness_logs", "prune_location_samples"]
