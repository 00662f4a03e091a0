"""Typed views over the trust-related Django settings.

Every policy constant used by the pipeline is read here once per call to the
``from_settings`` constructors so ``override_settings`` in tests takes effect
without reloading modules.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Optional, Tuple

from django.conf import settings

from .types import FraudAction, Severity


def _setting(name: str, default):
    return getattr(settings, name, default)


def default_geofence_radius() -> float:
    return float(_setting("GEOFENCE_DEFAULT_RADIUS_METERS", 100.0))


@dataclass(frozen=True)
class SpoofThresholds:
    """Limits used by the kinematic spoof detector."""

    teleport_kmh: float = 500.0
    impossible_kmh: float = 150.0
    impossible_window_seconds: float = 60.0
    low_accuracy_meters: float = 100.0

    @classmethod
    def from_settings(cls) -> "SpoofThresholds":
        return cls(
            teleport_kmh=float(_setting("SPOOF_TELEPORT_KMH", 500.0)),
            impossible_kmh=float(_setting("SPOOF_IMPOSSIBLE_KMH", 150.0)),
            impossible_window_seconds=float(_setting("SPOOF_IMPOSSIBLE_WINDOW_SECONDS", 60.0)),
            low_accuracy_meters=float(_setting("SPOOF_LOW_ACCURACY_METERS", 100.0)),
        )


@dataclass(frozen=True)
class EscalationPolicy:
    """Count-based escalation applied when a fraud attempt is recorded."""

    window: dt.timedelta = dt.timedelta(hours=24)
    block_duration: dt.timedelta = dt.timedelta(hours=24)
    block_count: int = 5
    escalate_count: int = 3
    warn_count: int = 2

    @classmethod
    def from_settings(cls) -> "EscalationPolicy":
        return cls(
            window=dt.timedelta(hours=float(_setting("FRAUD_WINDOW_HOURS", 24))),
            block_duration=dt.timedelta(hours=float(_setting("FRAUD_BLOCK_HOURS", 24))),
            block_count=int(_setting("FRAUD_BLOCK_COUNT", 5)),
            escalate_count=int(_setting("FRAUD_ESCALATE_COUNT", 3)),
            warn_count=int(_setting("FRAUD_WARN_COUNT", 2)),
        )

    def decide(
        self, severity: Severity, trailing_count: int, now: dt.datetime
    ) -> Tuple[FraudAction, Optional[dt.datetime]]:
        """Map a severity and trailing-window count to an action.

        ``trailing_count`` includes the attempt being recorded. Rules are
        evaluated in priority order and the first match wins.
        """

        if severity is Severity.CRITICAL or trailing_count >= self.block_count:
            return FraudAction.BLOCKED, now + self.block_duration
        if severity is Severity.HIGH or trailing_count >= self.escalate_count:
            return FraudAction.ESCALATED, None
        if trailing_count >= self.warn_count:
            return FraudAction.WARNED, None
        return FraudAction.LOGGED, None


@dataclass(frozen=True)
class LivenessConfig:
    timeout: dt.timedelta = dt.timedelta(seconds=120)
    min_frames: int = 5
    min_confidence: float = 0.8
    inconclusive_confidence: float = 0.5
    texture_threshold: float = 0.5
    texture_variance_reference: float = 100.0
    reaper_interval_seconds: float = 5.0

    @classmethod
    def from_settings(cls) -> "LivenessConfig":
        return cls(
            timeout=dt.timedelta(seconds=float(_setting("LIVENESS_SESSION_TIMEOUT_SECONDS", 120))),
            min_frames=int(_setting("LIVENESS_MIN_FRAMES", 5)),
            min_confidence=float(_setting("LIVENESS_MIN_CONFIDENCE", 0.8)),
            inconclusive_confidence=float(_setting("LIVENESS_INCONCLUSIVE_CONFIDENCE", 0.5)),
            texture_threshold=float(_setting("LIVENESS_TEXTURE_THRESHOLD", 0.5)),
            texture_variance_reference=float(
                _setting("LIVENESS_TEXTURE_VARIANCE_REFERENCE", 100.0)
            ),
            reaper_interval_seconds=float(_setting("LIVENESS_REAPER_INTERVAL_SECONDS", 5)),
        )


@dataclass(frozen=True)
class BiometricConfig:
    recognition_threshold: float = 0.85
    fallback_distance_threshold: float = 0.5
    min_image_bytes: int = 1000

    @classmethod
    def from_settings(cls) -> "BiometricConfig":
        return cls(
            recognition_threshold=float(_setting("FACE_RECOGNITION_THRESHOLD", 0.85)),
            fallback_distance_threshold=float(_setting("FACE_FALLBACK_DISTANCE_THRESHOLD", 0.5)),
            min_image_bytes=int(_setting("FACE_MIN_IMAGE_BYTES", 1000)),
        )


@dataclass(frozen=True)
class VerificationConfig:
    failure_threshold: int = 3
    counter_ttl: dt.timedelta = dt.timedelta(seconds=900)

    @classmethod
    def from_settings(cls) -> "VerificationConfig":
        return cls(
            failure_threshold=int(_setting("VERIFICATION_FAILURE_THRESHOLD", 3)),
            counter_ttl=dt.timedelta(
                seconds=float(_setting("VERIFICATION_COUNTER_TTL_SECONDS", 900))
            ),
        )


__all__ = [
    "BiometricConfig",
    "EscalationPolicy",
    "LivenessConfig",
    "SpoofThresholds",
    "VerificationConfig",
    "default_geofence_radius",
]
