"""Kinematic plausibility checks and geofencing for location samples."""

from __future__ import annotations

import datetime as dt
import logging
import math
import numbers
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional, Tuple

from django.utils import timezone

from .conf import SpoofThresholds, default_geofence_radius
from .exceptions import InvalidLocation
from .interfaces import LocationHistoryStore
from .types import AttemptType, LocationSample, Severity

if TYPE_CHECKING:
    from .fraud import FraudLedger

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two WGS84 points in metres."""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def _finite(value: object, name: str) -> float:
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        raise InvalidLocation(f"{name} must be numeric")
    numeric = float(value)
    if not math.isfinite(numeric):
        raise InvalidLocation(f"{name} must be finite")
    return numeric


def validate_sample(sample: LocationSample) -> None:
    """Raise :class:`InvalidLocation` when ``sample`` cannot be evaluated."""

    latitude = _finite(sample.latitude, "latitude")
    longitude = _finite(sample.longitude, "longitude")
    if not -90.0 <= latitude <= 90.0:
        raise InvalidLocation(f"latitude {latitude} outside [-90, 90]")
    if not -180.0 <= longitude <= 180.0:
        raise InvalidLocation(f"longitude {longitude} outside [-180, 180]")
    if sample.accuracy_meters is not None:
        accuracy = _finite(sample.accuracy_meters, "accuracy_meters")
        if accuracy < 0:
            raise InvalidLocation("accuracy_meters must not be negative")
    if sample.recorded_at is None:
        raise InvalidLocation("recorded_at is required")
    if not isinstance(sample.recorded_at, dt.datetime) or timezone.is_naive(sample.recorded_at):
        raise InvalidLocation("recorded_at must be a timezone-aware datetime")


@dataclass(frozen=True)
class SpoofCheck:
    """Flags raised for one sample against the previous fix."""

    spoofed: bool
    teleportation: bool = False
    mock_location: bool = False
    low_accuracy: bool = False
    impossible_speed: bool = False
    speed_kmh: Optional[float] = None
    distance_meters: Optional[float] = None
    elapsed_seconds: Optional[float] = None

    def flags(self) -> dict[str, bool]:
        return {
            "teleportation": self.teleportation,
            "mock_location": self.mock_location,
            "low_accuracy": self.low_accuracy,
            "impossible_speed": self.impossible_speed,
        }


NOT_EVALUATED = SpoofCheck(spoofed=False)


def detect_spoofing(
    previous: Optional[LocationSample],
    sample: LocationSample,
    thresholds: SpoofThresholds = SpoofThresholds(),
) -> SpoofCheck:
    """Compare ``sample`` against the subject's prior fix.

    No prior fix, or a non-positive elapsed time, yields an unflagged result:
    the pair cannot be evaluated and the subject is not penalised.
    """

    validate_sample(sample)
    if previous is None:
        return NOT_EVALUATED
    validate_sample(previous)

    elapsed = (sample.recorded_at - previous.recorded_at).total_seconds()
    if elapsed <= 0:
        return NOT_EVALUATED

    distance = haversine_meters(
        previous.latitude, previous.longitude, sample.latitude, sample.longitude
    )
    speed_kmh = distance / elapsed * 3.6

    teleportation = speed_kmh > thresholds.teleport_kmh
    mock_location = bool(sample.is_mock)
    low_accuracy = (
        sample.accuracy_meters is not None
        and sample.accuracy_meters > thresholds.low_accuracy_meters
    )
    impossible_speed = (
        speed_kmh > thresholds.impossible_kmh
        and elapsed <= thresholds.impossible_window_seconds
    )
    return SpoofCheck(
        spoofed=teleportation or mock_location or impossible_speed,
        teleportation=teleportation,
        mock_location=mock_location,
        low_accuracy=low_accuracy,
        impossible_speed=impossible_speed,
        speed_kmh=speed_kmh,
        distance_meters=distance,
        elapsed_seconds=elapsed,
    )


class KinematicSpoofDetector:
    """Run :func:`detect_spoofing` against the stored location history."""

    def __init__(
        self, history: LocationHistoryStore, thresholds: Optional[SpoofThresholds] = None
    ) -> None:
        self.history = history
        self.thresholds = thresholds or SpoofThresholds.from_settings()

    def detect(self, sample: LocationSample) -> SpoofCheck:
        validate_sample(sample)
        previous = self.history.latest(sample.subject_id)
        return detect_spoofing(previous, sample, self.thresholds)


@dataclass(frozen=True)
class Geofence:
    latitude: float
    longitude: float
    radius_meters: float = field(default_factory=default_geofence_radius)

    def contains(self, sample: LocationSample) -> Tuple[bool, float]:
        distance = haversine_meters(self.latitude, self.longitude, sample.latitude, sample.longitude)
        return distance <= self.radius_meters, distance


@dataclass(frozen=True)
class TrackingResult:
    accepted: bool
    spoof: SpoofCheck = NOT_EVALUATED
    within_geofence: Optional[bool] = None
    distance_meters: Optional[float] = None
    rejection: Optional[str] = None


class LocationTracker:
    """Ingest path that owns location samples.

    Mock-location fixes are refused outright; kinematically implausible fixes
    are recorded to the fraud ledger but still stored so the next comparison
    uses the latest reported position.
    """

    def __init__(
        self,
        history: LocationHistoryStore,
        ledger: "FraudLedger",
        detector: Optional[KinematicSpoofDetector] = None,
    ) -> None:
        self.history = history
        self.ledger = ledger
        self.detector = detector or KinematicSpoofDetector(history)

    def record_location(
        self, sample: LocationSample, geofence: Optional[Geofence] = None
    ) -> TrackingResult:
        validate_sample(sample)

        if sample.is_mock:
            self.ledger.record(
                sample.subject_id,
                AttemptType.GPS_SPOOF,
                Severity.HIGH,
                details={
                    "reason": "mock_location",
                    "latitude": sample.latitude,
                    "longitude": sample.longitude,
                },
            )
            logger.warning(
                "Mock location sample rejected",
                extra={"event": "location_rejected", "subject_id": sample.subject_id},
            )
            return TrackingResult(accepted=False, rejection="mock_location_detected")

        check = self.detector.detect(sample)
        if check.spoofed:
            self.ledger.record(
                sample.subject_id,
                AttemptType.GPS_SPOOF,
                Severity.CRITICAL,
                details={
                    "flags": check.flags(),
                    "speed_kmh": check.speed_kmh,
                    "distance_meters": check.distance_meters,
                },
            )

        within: Optional[bool] = None
        distance: Optional[float] = None
        if geofence is not None:
            within, distance = geofence.contains(sample)
            if not within:
                self.ledger.record(
                    sample.subject_id,
                    AttemptType.OUT_OF_ZONE,
                    Severity.MEDIUM,
                    details={
                        "distance_meters": round(distance, 1),
                        "radius_meters": geofence.radius_meters,
                    },
                )

        self.history.append(sample)
        logger.debug(
            "Location sample stored",
            extra={
                "event": "location_stored",
                "subject_id": sample.subject_id,
                "spoofed": check.spoofed,
            },
        )
        return TrackingResult(
            accepted=True, spoof=check, within_geofence=within, distance_meters=distance
        )


__all__ = [
    "EARTH_RADIUS_METERS",
    "Geofence",
    "KinematicSpoofDetector",
    "LocationTracker",
    "SpoofCheck",
    "TrackingResult",
    "detect_spoofing",
    "haversine_meters",
    "validate_sample",
]
