"""Database models for the trust app."""

from __future__ import annotations

import datetime as dt
import logging
from enum import Enum
from typing import List, Optional, Tuple, Type

from django.conf import settings
from django.db import models
from django.utils import timezone

from .types import AttemptType, BiometricMode, CheckType, FraudAction, LivenessStatus, Severity

logger = logging.getLogger(__name__)


def _choices(enum: Type[Enum]) -> List[Tuple[str, str]]:
    return [(member.value, member.value.replace("-", " ").replace("_", " ").title()) for member in enum]


def _retention_cutoff(setting_name: str, default: int) -> Optional[dt.datetime]:
    retention_days = getattr(settings, setting_name, default)
    if retention_days in (None, "none", ""):
        return None
    try:
        days = int(retention_days)
    except (TypeError, ValueError):  # pragma: no cover - defensive
        logger.debug("Invalid %s=%r; skipping prune.", setting_name, retention_days)
        return None
    if days <= 0:
        logger.debug("Retention set to %s days; skipping prune.", days)
        return None
    return timezone.now() - dt.timedelta(days=days)


class FaceEnrollment(models.Model):
    """Reference face descriptor for one subject, stored encrypted."""

    subject_id = models.CharField(max_length=150, unique=True)
    descriptor_ciphertext = models.BinaryField(
        help_text="Fernet token of the float64 descriptor; never plaintext",
    )
    image_count = models.PositiveIntegerField(default=1)
    mode = models.CharField(
        max_length=16, choices=_choices(BiometricMode), default=BiometricMode.FALLBACK.value
    )
    backend_stale = models.BooleanField(
        default=False,
        help_text="Recognition backend may still hold faces from an earlier enrollment",
    )
    enrolled_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["subject_id"]
        verbose_name = "Face Enrollment"
        verbose_name_plural = "Face Enrollments"

    def __str__(self) -> str:
        return f"{self.subject_id} ({self.mode}, {self.image_count} image(s))"


class GeoTrackingPoint(models.Model):
    """Location sample reported by a subject's device."""

    subject_id = models.CharField(max_length=150)
    latitude = models.FloatField()
    longitude = models.FloatField()
    accuracy_meters = models.FloatField(null=True, blank=True)
    is_mock = models.BooleanField(default=False)
    recorded_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-recorded_at"]
        indexes = [
            models.Index(fields=["subject_id", "recorded_at"], name="trust_geo_subject_recorded_idx")
        ]
        verbose_name = "Location Sample"
        verbose_name_plural = "Location Samples"

    def __str__(self) -> str:
        return f"{self.subject_id} @ {self.latitude:.5f},{self.longitude:.5f}"

    @classmethod
    def prune_expired(cls) -> int:
        """Delete samples older than ``LOCATION_SAMPLE_RETENTION_DAYS``."""

        cutoff = _retention_cutoff("LOCATION_SAMPLE_RETENTION_DAYS", 30)
        if cutoff is None:
            return 0
        deleted, _ = cls.objects.filter(recorded_at__lt=cutoff).delete()
        return deleted


class FraudAttemptQuerySet(models.QuerySet["FraudAttempt"]):
    def for_subject_since(self, subject_id: str, since) -> "FraudAttemptQuerySet":
        return self.filter(subject_id=subject_id, created_at__gte=since)

    def active_blocks(self, now=None) -> "FraudAttemptQuerySet":
        now = now or timezone.now()
        return self.filter(action_taken=FraudAction.BLOCKED.value, blocked_until__gt=now)


class FraudAttempt(models.Model):
    """Append-only fraud ledger row. Existing rows can never be saved again."""

    record_id = models.CharField(max_length=32, unique=True)
    subject_id = models.CharField(max_length=150)
    attempt_type = models.CharField(max_length=32, choices=_choices(AttemptType))
    severity = models.CharField(max_length=16, choices=_choices(Severity))
    action_taken = models.CharField(max_length=16, choices=_choices(FraudAction))
    blocked_until = models.DateTimeField(null=True, blank=True)
    evidence = models.BinaryField(
        null=True, blank=True, help_text="Evidence blob encrypted with DATA_ENCRYPTION_KEY"
    )
    details = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    objects: FraudAttemptQuerySet = FraudAttemptQuerySet.as_manager()

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["subject_id", "created_at"], name="trust_fraud_subj_created_idx"),
            models.Index(fields=["action_taken", "blocked_until"], name="trust_fraud_action_until_idx"),
        ]
        verbose_name = "Fraud Attempt"
        verbose_name_plural = "Fraud Attempts"

    def __str__(self) -> str:
        return f"{self.subject_id} {self.attempt_type}/{self.severity} -> {self.action_taken}"

    def save(self, *args, **kwargs) -> None:
        if not self._state.adding:
            raise ValueError("Fraud attempts are append-only and cannot be modified")
        super().save(*args, **kwargs)


class LivenessLog(models.Model):
    """Terminal outcome of one liveness session."""

    session_id = models.CharField(max_length=64, unique=True)
    subject_id = models.CharField(max_length=150)
    check_type = models.CharField(max_length=16, choices=_choices(CheckType))
    result = models.CharField(max_length=16, choices=_choices(LivenessStatus))
    confidence = models.FloatField(default=0.0)
    checks_performed = models.JSONField(default=list, blank=True)
    failure_reasons = models.JSONField(default=list, blank=True)
    frames_analyzed = models.PositiveIntegerField(default=0)
    duration_ms = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["subject_id", "created_at"], name="trust_live_subj_created_idx"),
            models.Index(fields=["result", "created_at"], name="trust_live_result_created_idx"),
        ]
        verbose_name = "Liveness Log"
        verbose_name_plural = "Liveness Logs"

    def __str__(self) -> str:
        return f"{self.subject_id} {self.check_type} {self.result} @ {self.created_at:%Y-%m-%d %H:%M:%S}"

    @classmethod
    def prune_expired(cls) -> int:
        """Delete logs older than ``LIVENESS_LOG_RETENTION_DAYS``."""

        cutoff = _retention_cutoff("LIVENESS_LOG_RETENTION_DAYS", 90)
        if cutoff is None:
            return 0
        deleted, _ = cls.objects.filter(created_at__lt=cutoff).delete()
        return deleted


__all__ = ["FaceEnrollment", "FraudAttempt", "GeoTrackingPoint", "LivenessLog"]
