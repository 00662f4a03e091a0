"""Thread-safe in-memory collaborators for tests and single-process use."""

from __future__ import annotations

import datetime as dt
import threading
from collections import defaultdict
from typing import Dict, Iterable, List, Optional

from src.common.crypto import PlainDescriptor

from .types import Enrollment, FraudAttemptRecord, LivenessOutcomeRecord, LocationSample


class InMemoryLocationHistory:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._samples: Dict[str, List[LocationSample]] = defaultdict(list)

    def latest(self, subject_id: str) -> Optional[LocationSample]:
        with self._lock:
            samples = self._samples.get(subject_id)
            if not samples:
                return None
            return max(samples, key=lambda sample: sample.recorded_at)

    def append(self, sample: LocationSample) -> None:
        with self._lock:
            self._samples[sample.subject_id].append(sample)

    def samples(self, subject_id: str) -> List[LocationSample]:
        with self._lock:
            return sorted(self._samples.get(subject_id, []), key=lambda s: s.recorded_at)


class InMemoryEnrollmentStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._enrollments: Dict[str, Enrollment] = {}

    def get(self, subject_id: str) -> Optional[Enrollment]:
        with self._lock:
            return self._enrollments.get(subject_id)

    def get_descriptor(self, subject_id: str) -> Optional[PlainDescriptor]:
        enrollment = self.get(subject_id)
        return enrollment.descriptor if enrollment else None

    def set_descriptor(self, enrollment: Enrollment) -> None:
        with self._lock:
            self._enrollments[enrollment.subject_id] = enrollment

    def clear(self, subject_id: str) -> bool:
        with self._lock:
            return self._enrollments.pop(subject_id, None) is not None

    def subjects(self) -> Iterable[str]:
        with self._lock:
            return list(self._enrollments)


class InMemoryLogSink:
    """Durable log sink stand-in keeping records in append order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.fraud_records: List[FraudAttemptRecord] = []
        self.liveness_records: List[LivenessOutcomeRecord] = []

    def append_fraud(self, record: FraudAttemptRecord) -> None:
        with self._lock:
            self.fraud_records.append(record)

    def fraud_since(self, subject_id: str, since: dt.datetime) -> List[FraudAttemptRecord]:
        with self._lock:
            matches = [
                record
                for record in self.fraud_records
                if record.subject_id == subject_id and record.created_at >= since
            ]
        return sorted(matches, key=lambda record: record.created_at, reverse=True)

    def append_liveness(self, record: LivenessOutcomeRecord) -> None:
        with self._lock:
            if any(existing.session_id == record.session_id for existing in self.liveness_records):
                raise ValueError(f"Liveness outcome for {record.session_id!r} already written")
            self.liveness_records.append(record)


__all__ = ["InMemoryEnrollmentStore", "InMemoryLocationHistory", "InMemoryLogSink"]
