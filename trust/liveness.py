"""Challenge-response liveness sessions.

A session asks the subject to perform a short random sequence of physical
actions on camera. Frames are streamed in, analysed for spoofing signals and
counted toward the current challenge. Each session reaches exactly one
terminal state (passed, failed, inconclusive or timeout) which is written once
to the durable log before the session leaves the live table.
"""

from __future__ import annotations

import datetime as dt
import logging
import random
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np
from django.utils.dateparse import parse_datetime

from . import monitoring
from .biometrics import ImageInput, decode_image
from .clock import SystemClock
from .conf import LivenessConfig
from .exceptions import InvalidImage, InvalidLocation, StaleSessionError, UserBlockedError
from .fraud import FraudLedger
from .geo import KinematicSpoofDetector
from .interfaces import Clock, DurableLogSink
from .types import (
    AttemptType,
    Challenge,
    ChallengeKind,
    CheckType,
    LivenessOutcomeRecord,
    LivenessStatus,
    LocationSample,
    Severity,
)

logger = logging.getLogger(__name__)

FACIAL_CHALLENGES: Tuple[Challenge, ...] = (
    Challenge(ChallengeKind.BLINK, "Blink twice", 3000, 3),
    Challenge(ChallengeKind.TURN_LEFT, "Turn your head to the left", 2000, 2),
    Challenge(ChallengeKind.TURN_RIGHT, "Turn your head to the right", 2000, 2),
    Challenge(ChallengeKind.NOD, "Nod your head up and down", 2000, 2),
    Challenge(ChallengeKind.SMILE, "Smile naturally", 2000, 2),
)
DOCUMENT_CHALLENGES: Tuple[Challenge, ...] = (
    Challenge(ChallengeKind.TILT_DOCUMENT, "Tilt the document slightly", 3000, 3),
    Challenge(ChallengeKind.MOVE_DOCUMENT, "Move the document slowly", 2000, 2),
)
GENERAL_INSTRUCTIONS: Tuple[str, ...] = (
    "Face the camera",
    "Make sure the area is well lit",
    "Follow the on-screen instructions",
)
HIGH_SEVERITY_CONFIDENCE = 0.8


def select_challenges(check_type: CheckType, rng: random.Random) -> Tuple[Challenge, ...]:
    """Draw the challenge sequence for a new session."""

    if check_type is CheckType.FACIAL:
        return tuple(rng.sample(FACIAL_CHALLENGES, rng.randint(2, 4)))
    if check_type is CheckType.DOCUMENT:
        return DOCUMENT_CHALLENGES
    return tuple(rng.sample(FACIAL_CHALLENGES, 2)) + DOCUMENT_CHALLENGES


def texture_score(frame: bytes, variance_reference: float) -> Optional[float]:
    """Score image sharpness in [0, 1]; flat recaptures score low.

    Returns ``None`` when the bytes are not a decodable image.
    """

    buffer = np.frombuffer(frame, dtype=np.uint8)
    gray = cv2.imdecode(buffer, cv2.IMREAD_GRAYSCALE)
    if gray is None or gray.size == 0:
        return None
    variance = float(cv2.Laplacian(gray, cv2.CV_64F).var())
    return min(1.0, variance / variance_reference)


def _frame_timestamp(value: Any, now: dt.datetime) -> Any:
    """Accept ISO 8601 strings from clients; anything else is validated later."""

    if value is None:
        return now
    if isinstance(value, str):
        try:
            return parse_datetime(value) or value
        except ValueError:
            return value
    return value


@dataclass(frozen=True)
class FrameAnomaly:
    attempt_type: AttemptType
    confidence: float
    detail: str

    @property
    def severity(self) -> Severity:
        return Severity.HIGH if self.confidence > HIGH_SEVERITY_CONFIDENCE else Severity.MEDIUM


@dataclass(frozen=True)
class Progress:
    completed: int
    total: int

    @property
    def percentage(self) -> int:
        return round(self.completed / self.total * 100) if self.total else 100


@dataclass(frozen=True)
class SessionTicket:
    session_id: str
    challenges: Tuple[Challenge, ...]
    timeout_ms: int
    instructions: Tuple[str, ...]

    def as_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "challenges": [challenge.as_dict() for challenge in self.challenges],
            "timeout_ms": self.timeout_ms,
            "instructions": list(self.instructions),
        }


@dataclass(frozen=True)
class FrameFeedback:
    progress: Progress
    current_challenge: Optional[Challenge]
    feedback: Optional[str] = None


@dataclass(frozen=True)
class LivenessCompletion:
    session_id: str
    result: LivenessStatus
    confidence: float
    can_retry: bool
    frames_analyzed: int
    failure_reasons: Tuple[str, ...] = ()

    @property
    def passed(self) -> bool:
        return self.result is LivenessStatus.PASSED


@dataclass
class LivenessSession:
    """Mutable per-session state. Guarded by ``lock``."""

    session_id: str
    subject_id: str
    check_type: CheckType
    challenges: Tuple[Challenge, ...]
    created_at: dt.datetime
    expires_at: dt.datetime
    frames_received: int = 0
    current_frames: int = 0
    completed: List[ChallengeKind] = field(default_factory=list)
    status: LivenessStatus = LivenessStatus.PENDING
    outcome: Optional[LivenessCompletion] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def current_challenge(self) -> Optional[Challenge]:
        for challenge in self.challenges:
            if challenge.kind not in self.completed:
                return challenge
        return None

    def progress(self) -> Progress:
        return Progress(completed=len(self.completed), total=len(self.challenges))

    @property
    def expected_duration_ms(self) -> int:
        return sum(challenge.duration_ms for challenge in self.challenges)


class LivenessSessionManager:
    """Own the live session table and drive each session's state machine."""

    def __init__(
        self,
        ledger: FraudLedger,
        sink: DurableLogSink,
        *,
        detector: Optional[KinematicSpoofDetector] = None,
        config: Optional[LivenessConfig] = None,
        clock: Optional[Clock] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.ledger = ledger
        self.sink = sink
        self.detector = detector
        self.config = config or LivenessConfig.from_settings()
        self.clock = clock or SystemClock()
        self.rng = rng or random.SystemRandom()
        self._sessions: Dict[str, LivenessSession] = {}
        self._results: Dict[str, Tuple[dt.datetime, LivenessCompletion]] = {}
        self._table_lock = threading.Lock()
        self._reaper: Optional[threading.Thread] = None
        self._stop_reaper = threading.Event()
        self._sweep_hooks: List[Callable[[], Any]] = []

    # -- table helpers --------------------------------------------------

    def _lookup(self, session_id: str) -> Optional[LivenessSession]:
        with self._table_lock:
            return self._sessions.get(session_id)

    def _remove(self, session_id: str) -> None:
        with self._table_lock:
            self._sessions.pop(session_id, None)
            count = len(self._sessions)
        monitoring.set_active_sessions(count)

    def active_session_count(self) -> int:
        with self._table_lock:
            return len(self._sessions)

    # -- lifecycle --------------------------------------------------------

    def start_session(
        self, subject_id: str, check_type: CheckType | str = CheckType.FACIAL
    ) -> SessionTicket:
        check_type = CheckType(check_type)
        block = self.ledger.is_blocked(subject_id)
        if block.blocked:
            logger.info(
                "Refused liveness session for blocked subject %s",
                subject_id,
                extra={"event": "liveness_refused", "reason": block.reason},
            )
            raise UserBlockedError(block.until, block.reason.value if block.reason else None)

        now = self.clock.now()
        challenges = select_challenges(check_type, self.rng)
        session = LivenessSession(
            session_id=uuid.uuid4().hex,
            subject_id=subject_id,
            check_type=check_type,
            challenges=challenges,
            created_at=now,
            expires_at=now + self.config.timeout,
        )
        with self._table_lock:
            self._sessions[session.session_id] = session
            count = len(self._sessions)
        monitoring.set_active_sessions(count)
        logger.info(
            "Started liveness session %s",
            session.session_id,
            extra={
                "event": "liveness_started",
                "subject_id": subject_id,
                "check_type": check_type.value,
                "challenges": [challenge.kind.value for challenge in challenges],
            },
        )
        return SessionTicket(
            session_id=session.session_id,
            challenges=challenges,
            timeout_ms=int(self.config.timeout.total_seconds() * 1000),
            instructions=tuple(challenge.instruction for challenge in challenges)
            + GENERAL_INSTRUCTIONS,
        )

    def submit_frame(
        self,
        session_id: str,
        frame: Optional[ImageInput],
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> FrameFeedback:
        session = self._lookup(session_id)
        if session is None:
            raise StaleSessionError(session_id)
        with session.lock:
            if session.status is not LivenessStatus.PENDING:
                raise StaleSessionError(session_id)
            now = self.clock.now()
            if now >= session.expires_at:
                self._expire_locked(session, now)
                raise StaleSessionError(session_id)
            feedback = self._ingest_locked(session, frame, metadata or {}, now)
            return FrameFeedback(
                progress=session.progress(),
                current_challenge=session.current_challenge(),
                feedback=feedback,
            )

    def complete(
        self, session_id: str, final_frame: Optional[ImageInput] = None
    ) -> LivenessCompletion:
        stored = self._stored_result(session_id)
        if stored is not None:
            return stored
        session = self._lookup(session_id)
        if session is None:
            stored = self._stored_result(session_id)
            if stored is not None:
                return stored
            raise StaleSessionError(session_id)

        with session.lock:
            if session.outcome is not None:
                return session.outcome
            if session.status is not LivenessStatus.PENDING:
                raise StaleSessionError(session_id)
            now = self.clock.now()
            if now >= session.expires_at:
                self._expire_locked(session, now)
                raise StaleSessionError(session_id)
            if final_frame is not None:
                self._ingest_locked(session, final_frame, {}, now)
            outcome = self._finalize_locked(session, now)

        self._remove(session_id)
        return outcome

    def _stored_result(self, session_id: str) -> Optional[LivenessCompletion]:
        with self._table_lock:
            entry = self._results.get(session_id)
        return entry[1] if entry else None

    # -- frame analysis ---------------------------------------------------

    def _ingest_locked(
        self,
        session: LivenessSession,
        frame: Optional[ImageInput],
        metadata: Mapping[str, Any],
        now: dt.datetime,
    ) -> Optional[str]:
        session.frames_received += 1
        frame_bytes: Optional[bytes] = None
        feedback: Optional[str] = None
        if frame is not None:
            try:
                frame_bytes = decode_image(frame)
            except InvalidImage:
                feedback = "Frame could not be read"

        anomalies = self._analyse(session, frame_bytes, metadata, now)
        for anomaly in anomalies:
            self._report(session, anomaly, frame_bytes, metadata)

        challenge = session.current_challenge()
        if challenge is not None:
            session.current_frames += 1
            if session.current_frames >= challenge.min_frames:
                session.completed.append(challenge.kind)
                session.current_frames = 0
                feedback = "Challenge complete"
        return feedback

    def _analyse(
        self,
        session: LivenessSession,
        frame: Optional[bytes],
        metadata: Mapping[str, Any],
        now: dt.datetime,
    ) -> List[FrameAnomaly]:
        anomalies: List[FrameAnomaly] = []
        if frame is not None:
            score = texture_score(frame, self.config.texture_variance_reference)
            if score is not None and score < self.config.texture_threshold:
                anomalies.append(
                    FrameAnomaly(AttemptType.PHOTO_SPOOF, 1 - score, "suspicious_texture")
                )

        if metadata.get("is_mock_location"):
            anomalies.append(FrameAnomaly(AttemptType.GPS_SPOOF, 1.0, "mock_location"))
        elif self.detector is not None and "latitude" in metadata and "longitude" in metadata:
            sample = LocationSample(
                subject_id=session.subject_id,
                latitude=metadata["latitude"],
                longitude=metadata["longitude"],
                recorded_at=_frame_timestamp(metadata.get("recorded_at"), now),
                accuracy_meters=metadata.get("accuracy"),
            )
            try:
                check = self.detector.detect(sample)
            except InvalidLocation as exc:
                logger.info(
                    "Ignoring malformed frame location: %s",
                    exc,
                    extra={"event": "frame_location_invalid", "session_id": session.session_id},
                )
            else:
                if check.spoofed:
                    anomalies.append(FrameAnomaly(AttemptType.GPS_SPOOF, 1.0, "kinematic_spoof"))
        return anomalies

    def _report(
        self,
        session: LivenessSession,
        anomaly: FrameAnomaly,
        frame: Optional[bytes],
        metadata: Mapping[str, Any],
    ) -> None:
        evidence = frame if anomaly.attempt_type is AttemptType.PHOTO_SPOOF else None
        details = {
            "session_id": session.session_id,
            "detail": anomaly.detail,
            "confidence": round(anomaly.confidence, 3),
        }
        for key in ("latitude", "longitude", "device_fingerprint", "ip_address"):
            if key in metadata:
                details[key] = metadata[key]
        try:
            self.ledger.record(
                session.subject_id,
                anomaly.attempt_type,
                anomaly.severity,
                evidence=evidence,
                details=details,
            )
        except Exception:
            # A ledger outage must not end the session.
            logger.exception(
                "Failed to record liveness anomaly",
                extra={"event": "fraud_record_failed", "session_id": session.session_id},
            )

    # -- terminal transitions ---------------------------------------------

    def _confidence(self, session: LivenessSession, now: dt.datetime) -> float:
        challenge_ratio = len(session.completed) / len(session.challenges)
        frame_ratio = min(session.frames_received / (self.config.min_frames * 2), 1.0)
        elapsed_ms = (now - session.created_at).total_seconds() * 1000
        time_ratio = min(elapsed_ms / session.expected_duration_ms, 1.0)
        timing = 1.0 if time_ratio > 0.5 else time_ratio * 2
        return (challenge_ratio + frame_ratio + timing) / 3

    def _finalize_locked(self, session: LivenessSession, now: dt.datetime) -> LivenessCompletion:
        confidence = self._confidence(session, now)
        all_done = len(session.completed) >= len(session.challenges)
        enough_frames = session.frames_received >= self.config.min_frames
        if all_done and enough_frames and confidence >= self.config.min_confidence:
            result = LivenessStatus.PASSED
        elif confidence < self.config.inconclusive_confidence:
            result = LivenessStatus.FAILED
        else:
            result = LivenessStatus.INCONCLUSIVE

        reasons: List[str] = []
        if result is not LivenessStatus.PASSED:
            if not all_done:
                reasons.append("challenges_incomplete")
            if not enough_frames:
                reasons.append("insufficient_frames")
            if confidence < self.config.min_confidence:
                reasons.append("low_confidence")

        self._write_outcome(session, result, confidence, reasons, now)
        can_retry = False
        if result is not LivenessStatus.PASSED:
            can_retry = not self.ledger.is_blocked(session.subject_id).blocked
        outcome = LivenessCompletion(
            session_id=session.session_id,
            result=result,
            confidence=round(confidence, 4),
            can_retry=can_retry,
            frames_analyzed=session.frames_received,
            failure_reasons=tuple(reasons),
        )
        session.status = result
        session.outcome = outcome
        with self._table_lock:
            self._results[session.session_id] = (now, outcome)
        logger.info(
            "Liveness session %s finished: %s",
            session.session_id,
            result.value,
            extra={
                "event": "liveness_completed",
                "subject_id": session.subject_id,
                "confidence": outcome.confidence,
            },
        )
        return outcome

    def _expire_locked(self, session: LivenessSession, now: dt.datetime) -> None:
        self._write_outcome(session, LivenessStatus.TIMEOUT, 0.0, ["session_timeout"], now)
        session.status = LivenessStatus.TIMEOUT
        self._remove(session.session_id)
        logger.warning(
            "Liveness session %s expired",
            session.session_id,
            extra={
                "event": "liveness_timeout",
                "subject_id": session.subject_id,
                "frames_received": session.frames_received,
            },
        )

    def _write_outcome(
        self,
        session: LivenessSession,
        result: LivenessStatus,
        confidence: float,
        reasons: Sequence[str],
        now: dt.datetime,
    ) -> None:
        self.sink.append_liveness(
            LivenessOutcomeRecord(
                session_id=session.session_id,
                subject_id=session.subject_id,
                check_type=session.check_type,
                result=result,
                confidence=round(confidence, 4),
                frames_analyzed=session.frames_received,
                duration_ms=int((now - session.created_at).total_seconds() * 1000),
                created_at=now,
                checks_performed=tuple(challenge.kind.value for challenge in session.challenges),
                failure_reasons=tuple(reasons),
            )
        )
        monitoring.record_liveness_outcome(result.value)

    # -- reaper -------------------------------------------------------------

    def reap_expired(self) -> int:
        """Expire every pending session past its deadline.

        Also drops remembered completion results older than the session
        timeout. Returns the number of sessions expired.
        """

        now = self.clock.now()
        with self._table_lock:
            candidates = list(self._sessions.values())
            cutoff = now - self.config.timeout
            for session_id in [
                key for key, (finished, _) in self._results.items() if finished < cutoff
            ]:
                del self._results[session_id]

        expired = 0
        for session in candidates:
            with session.lock:
                if session.status is LivenessStatus.PENDING and now >= session.expires_at:
                    self._expire_locked(session, now)
                    expired += 1
        return expired

    def add_sweep_hook(self, hook: Callable[[], Any]) -> None:
        """Run ``hook`` after every background sweep."""

        self._sweep_hooks.append(hook)

    @property
    def reaper_running(self) -> bool:
        return self._reaper is not None and self._reaper.is_alive()

    def start_reaper(self, interval: Optional[float] = None) -> None:
        if self.reaper_running:
            return
        period = interval if interval is not None else self.config.reaper_interval_seconds
        self._stop_reaper.clear()
        self._reaper = threading.Thread(
            target=self._reaper_loop, args=(period,), name="liveness-reaper", daemon=True
        )
        self._reaper.start()

    def stop_reaper(self, timeout: float = 1.0) -> None:
        self._stop_reaper.set()
        if self._reaper is not None:
            self._reaper.join(timeout=timeout)
            self._reaper = None

    def _reaper_loop(self, period: float) -> None:
        while not self._stop_reaper.wait(period):
            try:
                self.reap_expired()
                for hook in self._sweep_hooks:
                    hook()
            except Exception:
                logger.exception("Liveness reaper sweep failed", extra={"event": "reaper_error"})


__all__ = [
    "DOCUMENT_CHALLENGES",
    "FACIAL_CHALLENGES",
    "FrameAnomaly",
    "FrameFeedback",
    "LivenessCompletion",
    "LivenessSession",
    "LivenessSessionManager",
    "Progress",
    "SessionTicket",
    "select_challenges",
    "texture_score",
]
