"""Shared value types for the presence trust pipeline."""

from __future__ import annotations

import datetime as dt
import math
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from src.common.crypto import PlainDescriptor


class CheckType(str, Enum):
    """What the subject presents to the camera during a liveness session."""

    FACIAL = "facial"
    DOCUMENT = "document"
    COMBINED = "combined"


class ChallengeKind(str, Enum):
    """Physical actions a subject can be asked to perform on camera."""

    BLINK = "blink"
    TURN_LEFT = "turn_left"
    TURN_RIGHT = "turn_right"
    NOD = "nod"
    SMILE = "smile"
    TILT_DOCUMENT = "tilt_document"
    MOVE_DOCUMENT = "move_document"


class LivenessStatus(str, Enum):
    """Lifecycle states of a liveness session."""

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    INCONCLUSIVE = "inconclusive"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self is not LivenessStatus.PENDING


class AttemptType(str, Enum):
    """Categories of fraud recorded in the ledger."""

    GPS_SPOOF = "gps-spoof"
    PHOTO_SPOOF = "photo-spoof"
    VIDEO_SPOOF = "video-spoof"
    SCREEN_SPOOF = "screen-spoof"
    DOCUMENT_FORGERY = "document-forgery"
    MULTI_DEVICE = "multi-device"
    OUT_OF_ZONE = "out-of-zone"
    TIME_MANIPULATION = "time-manipulation"
    IDENTITY_MISMATCH = "identity-mismatch"
    OTHER = "other"


class Severity(str, Enum):
    """Coarse ordinal driving the escalation policy."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}


class FraudAction(str, Enum):
    """Response chosen by the escalation policy for a fraud attempt."""

    LOGGED = "logged"
    WARNED = "warned"
    ESCALATED = "escalated"
    BLOCKED = "blocked"


class BiometricMode(str, Enum):
    """Which comparator produced a biometric result."""

    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class LocationSample:
    """A single GPS fix reported by a subject's device."""

    subject_id: str
    latitude: float
    longitude: float
    recorded_at: dt.datetime
    accuracy_meters: Optional[float] = None
    is_mock: bool = False


@dataclass(frozen=True)
class Enrollment:
    """Stored reference descriptor for one subject."""

    subject_id: str
    descriptor: PlainDescriptor
    enrolled_at: dt.datetime
    image_count: int = 1
    mode: BiometricMode = BiometricMode.FALLBACK
    backend_stale: bool = False


@dataclass(frozen=True)
class Challenge:
    """One step of a liveness session."""

    kind: ChallengeKind
    instruction: str
    duration_ms: int
    min_frames: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind.value,
            "instruction": self.instruction,
            "duration_ms": self.duration_ms,
        }


@dataclass(frozen=True)
class FraudAttemptRecord:
    """Append-only ledger entry.

    ``action_taken`` and ``blocked_until`` are decided by the escalation
    policy before the record is constructed and never change afterwards.
    """

    subject_id: str
    attempt_type: AttemptType
    severity: Severity
    created_at: dt.datetime
    action_taken: FraudAction = FraudAction.LOGGED
    blocked_until: Optional[dt.datetime] = None
    evidence: Optional[bytes] = field(default=None, repr=False)
    details: dict[str, Any] = field(default_factory=dict)
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def blocks_at(self, moment: dt.datetime) -> bool:
        """Return True when this record enforces a lockout at ``moment``."""

        return (
            self.action_taken is FraudAction.BLOCKED
            and self.blocked_until is not None
            and self.blocked_until > moment
        )


@dataclass(frozen=True)
class LivenessOutcomeRecord:
    """Terminal result of a liveness session, written once."""

    session_id: str
    subject_id: str
    check_type: CheckType
    result: LivenessStatus
    confidence: float
    frames_analyzed: int
    duration_ms: int
    created_at: dt.datetime
    checks_performed: tuple[str, ...] = ()
    failure_reasons: tuple[str, ...] = ()


@dataclass(frozen=True)
class BlockStatus:
    """Answer of the fraud ledger's blocked-check."""

    blocked: bool
    until: Optional[dt.datetime] = None
    reason: Optional[AttemptType] = None

    def remaining_seconds(self, now: dt.datetime) -> float:
        if not self.blocked or self.until is None:
            return 0.0
        return max(0.0, (self.until - now).total_seconds())

    def remaining_minutes(self, now: dt.datetime) -> int:
        return math.ceil(self.remaining_seconds(now) / 60)


NOT_BLOCKED = BlockStatus(blocked=False)


__all__ = [
    "AttemptType",
    "BiometricMode",
    "BlockStatus",
    "Challenge",
    "ChallengeKind",
    "CheckType",
    "Enrollment",
    "FraudAction",
    "FraudAttemptRecord",
    "LivenessOutcomeRecord",
    "LivenessStatus",
    "LocationSample",
    "NOT_BLOCKED",
    "Severity",
]
