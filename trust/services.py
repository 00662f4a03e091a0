"""Facade exposing the trust pipeline to the check-in flow."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Mapping, Optional

from .biometrics import BiometricAdapter, IdentityMatch, ImageInput, RegistrationResult
from .clock import SystemClock
from .compreface import CompreFaceClient
from .fraud import FraudLedger
from .geo import Geofence, KinematicSpoofDetector, LocationTracker, TrackingResult
from .interfaces import (
    Clock,
    DurableLogSink,
    EnrollmentStore,
    LocationHistoryStore,
    RecognitionBackend,
)
from .liveness import FrameFeedback, LivenessCompletion, LivenessSessionManager, SessionTicket
from .types import BlockStatus, CheckType, LocationSample
from .verification import VerificationOrchestrator, VerificationResult

logger = logging.getLogger(__name__)


class PresenceTrustService:
    """Compose the pipeline components around shared collaborators.

    One instance owns its live session table and attempt counters; several
    instances may share the same durable sink, which remains the single
    source of truth for lockouts.

    The background sweep that expires abandoned sessions and idle counters
    runs between :meth:`start` and :meth:`stop`, or for the body of a
    ``with`` block.
    """

    def __init__(
        self,
        *,
        history: LocationHistoryStore,
        enrollments: EnrollmentStore,
        sink: DurableLogSink,
        backend: Optional[RecognitionBackend] = None,
        clock: Optional[Clock] = None,
        rng=None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.ledger = FraudLedger(sink, clock=self.clock)
        self.detector = KinematicSpoofDetector(history)
        self.tracker = LocationTracker(history, self.ledger, self.detector)
        self.biometrics = BiometricAdapter(enrollments, backend, clock=self.clock)
        self.liveness = LivenessSessionManager(
            self.ledger, sink, detector=self.detector, clock=self.clock, rng=rng
        )
        self.verification = VerificationOrchestrator(
            self.ledger, self.biometrics, clock=self.clock
        )
        self.liveness.add_sweep_hook(self.verification.counters.purge_idle)

    def start_liveness_session(
        self, subject_id: str, check_type: CheckType | str = CheckType.FACIAL
    ) -> SessionTicket:
        return self.liveness.start_session(subject_id, check_type)

    def submit_liveness_frame(
        self,
        session_id: str,
        frame: Optional[ImageInput],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> FrameFeedback:
        return self.liveness.submit_frame(session_id, frame, metadata)

    def complete_liveness(
        self, session_id: str, final_frame: Optional[ImageInput] = None
    ) -> LivenessCompletion:
        return self.liveness.complete(session_id, final_frame)

    def verify_identity(self, subject_id: str, image: ImageInput) -> VerificationResult:
        return self.verification.verify(subject_id, image)

    def is_blocked(self, subject_id: str) -> BlockStatus:
        return self.ledger.is_blocked(subject_id)

    def register_face(self, subject_id: str, images: Iterable[ImageInput]) -> RegistrationResult:
        return self.biometrics.register(subject_id, images)

    def identify_face(self, image: ImageInput, max_results: int = 5) -> List[IdentityMatch]:
        return self.biometrics.identify(image, max_results)

    def delete_face(self, subject_id: str) -> bool:
        return self.biometrics.delete(subject_id)

    def record_location(
        self, sample: LocationSample, geofence: Optional[Geofence] = None
    ) -> TrackingResult:
        return self.tracker.record_location(sample, geofence)

    def start(self) -> None:
        """Start background sweeps owned by this instance."""

        self.liveness.start_reaper()

    def stop(self) -> None:
        self.liveness.stop_reaper()

    def __enter__(self) -> "PresenceTrustService":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.stop()


def build_service(*, start: bool = True, **overrides: Any) -> PresenceTrustService:
    """Wire the service against the Django ORM stores and configured backend.

    The returned service already runs its background sweep unless ``start``
    is false; call :meth:`PresenceTrustService.stop` on shutdown.
    """

    from .stores import DjangoEnrollmentStore, DjangoLocationHistory, DjangoLogSink

    backend = overrides.pop("backend", None) or CompreFaceClient.from_settings()
    if backend is None:
        logger.info(
            "No recognition backend configured; biometric checks run in fallback mode",
            extra={"event": "backend_not_configured"},
        )
    options: dict[str, Any] = {
        "history": DjangoLocationHistory(),
        "enrollments": DjangoEnrollmentStore(),
        "sink": DjangoLogSink(),
        "backend": backend,
    }
    options.update(overrides)
    service = PresenceTrustService(**options)
    if start:
        service.start()
    return service


__all__ = ["PresenceTrustService", "build_service"]
