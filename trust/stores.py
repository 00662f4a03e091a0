"""Django ORM implementations of the trust collaborators.

Descriptors are sealed with the facial data key on every write and opened on
every read. Fraud evidence is encrypted with the general data key.
"""

from __future__ import annotations

import datetime as dt
from typing import Iterable, List, Optional

from django.db import transaction

from src.common.crypto import (
    DescriptorCipher,
    PlainDescriptor,
    SealedDescriptor,
    decrypt_bytes,
    encrypt_bytes,
)

from .models import FaceEnrollment, FraudAttempt, GeoTrackingPoint, LivenessLog
from .types import (
    AttemptType,
    BiometricMode,
    Enrollment,
    FraudAction,
    FraudAttemptRecord,
    LivenessOutcomeRecord,
    LocationSample,
    Severity,
)


class DjangoLocationHistory:
    def latest(self, subject_id: str) -> Optional[LocationSample]:
        row = (
            GeoTrackingPoint.objects.filter(subject_id=subject_id)
            .order_by("-recorded_at", "-id")
            .first()
        )
        if row is None:
            return None
        return LocationSample(
            subject_id=row.subject_id,
            latitude=row.latitude,
            longitude=row.longitude,
            recorded_at=row.recorded_at,
            accuracy_meters=row.accuracy_meters,
            is_mock=row.is_mock,
        )

    def append(self, sample: LocationSample) -> None:
        GeoTrackingPoint.objects.create(
            subject_id=sample.subject_id,
            latitude=sample.latitude,
            longitude=sample.longitude,
            accuracy_meters=sample.accuracy_meters,
            is_mock=sample.is_mock,
            recorded_at=sample.recorded_at,
        )


class DjangoEnrollmentStore:
    """Enrollment store that only ever persists ciphertext."""

    def __init__(self, cipher: Optional[DescriptorCipher] = None) -> None:
        self.cipher = cipher or DescriptorCipher()

    def _open(self, row: FaceEnrollment) -> PlainDescriptor:
        return self.cipher.open(SealedDescriptor(bytes(row.descriptor_ciphertext)))

    def get(self, subject_id: str) -> Optional[Enrollment]:
        row = FaceEnrollment.objects.filter(subject_id=subject_id).first()
        if row is None:
            return None
        return Enrollment(
            subject_id=row.subject_id,
            descriptor=self._open(row),
            enrolled_at=row.enrolled_at,
            image_count=row.image_count,
            mode=BiometricMode(row.mode),
            backend_stale=row.backend_stale,
        )

    def get_descriptor(self, subject_id: str) -> Optional[PlainDescriptor]:
        row = FaceEnrollment.objects.filter(subject_id=subject_id).first()
        return self._open(row) if row is not None else None

    def set_descriptor(self, enrollment: Enrollment) -> None:
        sealed = self.cipher.seal(enrollment.descriptor)
        with transaction.atomic():
            FaceEnrollment.objects.update_or_create(
                subject_id=enrollment.subject_id,
                defaults={
                    "descriptor_ciphertext": sealed.token,
                    "image_count": enrollment.image_count,
                    "mode": enrollment.mode.value,
                    "backend_stale": enrollment.backend_stale,
                    "enrolled_at": enrollment.enrolled_at,
                },
            )

    def clear(self, subject_id: str) -> bool:
        deleted, _ = FaceEnrollment.objects.filter(subject_id=subject_id).delete()
        return deleted > 0

    def subjects(self) -> Iterable[str]:
        return list(FaceEnrollment.objects.values_list("subject_id", flat=True))


class DjangoLogSink:
    """Durable sink for fraud attempts and liveness outcomes."""

    def append_fraud(self, record: FraudAttemptRecord) -> None:
        FraudAttempt.objects.create(
            record_id=record.record_id,
            subject_id=record.subject_id,
            attempt_type=record.attempt_type.value,
            severity=record.severity.value,
            action_taken=record.action_taken.value,
            blocked_until=record.blocked_until,
            evidence=encrypt_bytes(record.evidence) if record.evidence else None,
            details=record.details,
            created_at=record.created_at,
        )

    def fraud_since(self, subject_id: str, since: dt.datetime) -> List[FraudAttemptRecord]:
        rows = FraudAttempt.objects.for_subject_since(subject_id, since).order_by("-created_at", "-id")
        return [self._to_record(row) for row in rows]

    @staticmethod
    def _to_record(row: FraudAttempt) -> FraudAttemptRecord:
        evidence = decrypt_bytes(bytes(row.evidence)) if row.evidence else None
        return FraudAttemptRecord(
            subject_id=row.subject_id,
            attempt_type=AttemptType(row.attempt_type),
            severity=Severity(row.severity),
            created_at=row.created_at,
            action_taken=FraudAction(row.action_taken),
            blocked_until=row.blocked_until,
            evidence=evidence,
            details=dict(row.details or {}),
            record_id=row.record_id,
        )

    def append_liveness(self, record: LivenessOutcomeRecord) -> None:
        LivenessLog.objects.create(
            session_id=record.session_id,
            subject_id=record.subject_id,
            check_type=record.check_type.value,
            result=record.result.value,
            confidence=record.confidence,
            checks_performed=list(record.checks_performed),
            failure_reasons=list(record.failure_reasons),
            frames_analyzed=record.frames_analyzed,
            duration_ms=max(0, record.duration_ms),
            created_at=record.created_at,
        )


__all__ = ["DjangoEnrollmentStore", "DjangoLocationHistory", "DjangoLogSink"]
