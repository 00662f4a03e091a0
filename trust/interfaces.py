"""Collaborator protocols the pipeline core depends on.

Concrete implementations live in :mod:`trust.memory` (process-local) and
:mod:`trust.stores` (Django ORM); the HTTP recognition backend lives in
:mod:`trust.compreface`.
"""

from __future__ import annotations

import datetime as dt
from typing import Iterable, List, Optional, Protocol, Tuple

from src.common.crypto import PlainDescriptor

from .types import Enrollment, FraudAttemptRecord, LivenessOutcomeRecord, LocationSample


class Clock(Protocol):
    def now(self) -> dt.datetime: ...


class LocationHistoryStore(Protocol):
    def latest(self, subject_id: str) -> Optional[LocationSample]:
        """Return the subject's most recent stored sample, if any."""

    def append(self, sample: LocationSample) -> None: ...


class EnrollmentStore(Protocol):
    def get(self, subject_id: str) -> Optional[Enrollment]: ...

    def get_descriptor(self, subject_id: str) -> Optional[PlainDescriptor]: ...

    def set_descriptor(self, enrollment: Enrollment) -> None:
        """Store ``enrollment``, replacing any previous descriptor for the subject."""

    def clear(self, subject_id: str) -> bool: ...

    def subjects(self) -> Iterable[str]: ...


class RecognitionBackend(Protocol):
    """External face recognition service.

    Structural failures (timeouts, connection errors, 5xx responses) raise
    :class:`trust.exceptions.BackendUnavailable`.
    """

    def add_face(self, subject_id: str, image: bytes) -> None: ...

    def recognize(self, image: bytes, *, limit: int = 5) -> List[Tuple[str, float]]:
        """Return ``(subject_id, similarity)`` pairs, best first."""

    def delete_faces(self, subject_id: str) -> None: ...

    def health_check(self) -> bool: ...


class DurableLogSink(Protocol):
    def append_fraud(self, record: FraudAttemptRecord) -> None: ...

    def fraud_since(self, subject_id: str, since: dt.datetime) -> List[FraudAttemptRecord]:
        """Return the subject's attempts with ``created_at >= since``, newest first."""

    def append_liveness(self, record: LivenessOutcomeRecord) -> None: ...


__all__ = [
    "Clock",
    "DurableLogSink",
    "EnrollmentStore",
    "LocationHistoryStore",
    "RecognitionBackend",
]
