"""Face registration and verification with a degraded local fallback.

Two strategies share one interface. :class:`PrimaryStrategy` asks the external
recognition backend for a similarity score. :class:`FallbackStrategy` derives a
content-hash descriptor from the raw image bytes and compares it to the stored
enrollment by Euclidean distance. The hash only matches byte-identical images,
so fallback results are low assurance and always say so in ``mode`` and
``warning``.

The strategy is chosen per request by :meth:`BiometricAdapter.select_strategy`
from a health check. A structural backend failure during a primary call falls
back to the local comparator inside the same call.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import math
import re
import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Union

import numpy as np

from src.common.crypto import PlainDescriptor

from . import monitoring
from .clock import SystemClock
from .conf import BiometricConfig
from .exceptions import (
    BackendUnavailable,
    InsufficientSamples,
    InvalidImage,
    InvalidThreshold,
    NotEnrolled,
)
from .interfaces import Clock, EnrollmentStore, RecognitionBackend
from .locks import KeyedLocks
from .types import BiometricMode, Enrollment

logger = logging.getLogger(__name__)

ImageInput = Union[bytes, bytearray, memoryview, str]

MIN_THRESHOLD = 0.1
MAX_THRESHOLD = 0.9
DESCRIPTOR_LENGTH = 32
FALLBACK_WARNING = (
    "Recognition backend unavailable; result produced by the low-assurance local comparator."
)

_DATA_URI_PREFIX = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)


def decode_image(image: ImageInput, min_bytes: int = 0) -> bytes:
    """Return raw image bytes from bytes or a (data URI) base64 string."""

    if isinstance(image, (bytes, bytearray, memoryview)):
        data = bytes(image)
    elif isinstance(image, str):
        payload = _DATA_URI_PREFIX.sub("", image.strip(), count=1)
        try:
            data = base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise InvalidImage("Image is not valid base64") from exc
    else:
        raise InvalidImage(f"Unsupported image type {type(image).__name__}")
    if not data:
        raise InvalidImage("Image is empty")
    if len(data) < min_bytes:
        raise InvalidImage(f"Image is smaller than {min_bytes} bytes")
    return data


def content_descriptor(image: bytes) -> PlainDescriptor:
    """SHA-256 of the image bytes scaled to 32 floats in [0, 1]."""

    digest = hashlib.sha256(image).digest()
    return PlainDescriptor(np.frombuffer(digest, dtype=np.uint8).astype(np.float64) / 255.0)


def average_descriptors(descriptors: Sequence[PlainDescriptor]) -> PlainDescriptor:
    stacked = np.vstack([descriptor.values for descriptor in descriptors])
    return PlainDescriptor(stacked.mean(axis=0))


def descriptor_distance(first: PlainDescriptor, second: PlainDescriptor) -> float:
    if len(first) != len(second):
        return math.inf
    return float(np.linalg.norm(first.values - second.values))


def distance_confidence(distance: float) -> int:
    if not math.isfinite(distance):
        return 0
    return int(min(100, max(0, round((1 - distance) * 100))))


@dataclass(frozen=True)
class BiometricMatch:
    verified: bool
    confidence: int
    mode: BiometricMode
    similarity: Optional[float] = None
    distance: Optional[float] = None
    warning: Optional[str] = None


@dataclass(frozen=True)
class IdentityMatch:
    subject_id: str
    confidence: int
    mode: BiometricMode
    similarity: Optional[float] = None
    distance: Optional[float] = None


@dataclass(frozen=True)
class RegistrationResult:
    subject_id: str
    mode: BiometricMode
    image_count: int
    warning: Optional[str] = None


class FallbackStrategy:
    mode = BiometricMode.FALLBACK

    def __init__(self, enrollments: EnrollmentStore, distance_threshold: float) -> None:
        self.enrollments = enrollments
        self.distance_threshold = distance_threshold

    def verify(self, image: bytes, stored: PlainDescriptor) -> BiometricMatch:
        distance = descriptor_distance(content_descriptor(image), stored)
        return BiometricMatch(
            verified=distance < self.distance_threshold,
            confidence=distance_confidence(distance),
            mode=self.mode,
            distance=distance,
            warning=FALLBACK_WARNING,
        )

    def identify(self, image: bytes, max_results: int) -> List[IdentityMatch]:
        query = content_descriptor(image)
        matches = []
        for subject_id in self.enrollments.subjects():
            stored = self.enrollments.get_descriptor(subject_id)
            if stored is None:
                continue
            distance = descriptor_distance(query, stored)
            if distance < self.distance_threshold:
                matches.append(
                    IdentityMatch(
                        subject_id=subject_id,
                        confidence=distance_confidence(distance),
                        mode=self.mode,
                        distance=distance,
                    )
                )
        matches.sort(key=lambda match: (match.distance, match.subject_id))
        return matches[:max_results]


class PrimaryStrategy:
    mode = BiometricMode.PRIMARY

    def __init__(self, backend: RecognitionBackend, threshold: float) -> None:
        self.backend = backend
        self.threshold = threshold

    def verify(self, subject_id: str, image: bytes) -> BiometricMatch:
        matches = self.backend.recognize(image, limit=5)
        similarity = max(
            (score for subject, score in matches if subject == subject_id), default=0.0
        )
        return BiometricMatch(
            verified=similarity >= self.threshold,
            confidence=int(round(similarity * 100)),
            mode=self.mode,
            similarity=similarity,
        )

    def identify(self, image: bytes, max_results: int) -> List[IdentityMatch]:
        matches = [
            IdentityMatch(
                subject_id=subject,
                confidence=int(round(score * 100)),
                mode=self.mode,
                similarity=score,
            )
            for subject, score in self.backend.recognize(image, limit=max_results)
            if score >= self.threshold
        ]
        matches.sort(key=lambda match: match.similarity or 0.0, reverse=True)
        return matches[:max_results]

    def register(self, subject_id: str, images: Iterable[bytes]) -> None:
        self.backend.delete_faces(subject_id)
        for image in images:
            self.backend.add_face(subject_id, image)


class BiometricAdapter:
    """Register, verify and identify faces, reporting the mode used."""

    def __init__(
        self,
        enrollments: EnrollmentStore,
        backend: Optional[RecognitionBackend] = None,
        *,
        config: Optional[BiometricConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.enrollments = enrollments
        self.backend = backend
        self.config = config or BiometricConfig.from_settings()
        self.clock = clock or SystemClock()
        self._threshold = self.config.recognition_threshold
        self._threshold_lock = threading.Lock()
        self._locks = KeyedLocks()

    @property
    def threshold(self) -> float:
        with self._threshold_lock:
            return self._threshold

    def adjust_threshold(self, value: float) -> float:
        try:
            numeric = float(value)
        except (TypeError, ValueError) as exc:
            raise InvalidThreshold(f"Threshold {value!r} is not a number") from exc
        if not MIN_THRESHOLD <= numeric <= MAX_THRESHOLD:
            raise InvalidThreshold(
                f"Threshold {numeric} outside [{MIN_THRESHOLD}, {MAX_THRESHOLD}]"
            )
        with self._threshold_lock:
            previous, self._threshold = self._threshold, numeric
        logger.info(
            "Recognition threshold changed from %.2f to %.2f",
            previous,
            numeric,
            extra={"event": "threshold_adjusted"},
        )
        return numeric

    def _fallback(self) -> FallbackStrategy:
        return FallbackStrategy(self.enrollments, self.config.fallback_distance_threshold)

    def select_strategy(self) -> Union[PrimaryStrategy, FallbackStrategy]:
        """Pick the comparator for this request from a fresh health check."""

        if self.backend is not None and self.backend.health_check():
            return PrimaryStrategy(self.backend, self.threshold)
        return self._fallback()

    def _decode(self, image: ImageInput) -> bytes:
        return decode_image(image, self.config.min_image_bytes)

    def register(self, subject_id: str, images: Iterable[ImageInput]) -> RegistrationResult:
        valid: List[bytes] = []
        for index, image in enumerate(images):
            try:
                valid.append(self._decode(image))
            except InvalidImage as exc:
                logger.info(
                    "Skipping registration image %d for %s: %s",
                    index,
                    subject_id,
                    exc,
                    extra={"event": "registration_image_skipped"},
                )
        if not valid:
            raise InsufficientSamples(f"No valid image supplied for {subject_id!r}")

        descriptor = average_descriptors([content_descriptor(image) for image in valid])
        mode = BiometricMode.FALLBACK
        warning: Optional[str] = FALLBACK_WARNING
        with self._locks.hold(subject_id):
            previous = self.enrollments.get(subject_id)
            strategy = self.select_strategy()
            if isinstance(strategy, PrimaryStrategy):
                try:
                    strategy.register(subject_id, valid)
                    mode, warning = BiometricMode.PRIMARY, None
                except BackendUnavailable as exc:
                    monitoring.record_fallback("register", str(exc))
            else:
                monitoring.record_fallback("register", "backend not available")
            # Old backend faces survive until a primary registration replaces them.
            backend_stale = (
                mode is BiometricMode.FALLBACK
                and previous is not None
                and (previous.mode is BiometricMode.PRIMARY or previous.backend_stale)
            )
            if backend_stale:
                logger.warning(
                    "Backend faces for %s could not be replaced",
                    subject_id,
                    extra={"event": "backend_faces_stale"},
                )
            self.enrollments.set_descriptor(
                Enrollment(
                    subject_id=subject_id,
                    descriptor=descriptor,
                    enrolled_at=self.clock.now(),
                    image_count=len(valid),
                    mode=mode,
                    backend_stale=backend_stale,
                )
            )
        logger.info(
            "Registered %d image(s) for %s",
            len(valid),
            subject_id,
            extra={"event": "face_registered", "mode": mode.value},
        )
        return RegistrationResult(
            subject_id=subject_id, mode=mode, image_count=len(valid), warning=warning
        )

    def verify(self, subject_id: str, image: ImageInput) -> BiometricMatch:
        data = self._decode(image)
        enrollment = self.enrollments.get(subject_id)
        if enrollment is None:
            raise NotEnrolled(subject_id)

        strategy = self.select_strategy()
        if isinstance(strategy, PrimaryStrategy) and enrollment.backend_stale:
            monitoring.record_fallback("verify", "backend faces out of date")
        elif isinstance(strategy, PrimaryStrategy):
            try:
                return strategy.verify(subject_id, data)
            except BackendUnavailable as exc:
                monitoring.record_fallback("verify", str(exc))
        else:
            monitoring.record_fallback("verify", "backend not available")
        return self._fallback().verify(data, enrollment.descriptor)

    def _backend_stale(self, subject_id: str) -> bool:
        enrollment = self.enrollments.get(subject_id)
        return enrollment is not None and enrollment.backend_stale

    def identify(self, image: ImageInput, max_results: int = 5) -> List[IdentityMatch]:
        data = self._decode(image)
        strategy = self.select_strategy()
        if isinstance(strategy, PrimaryStrategy):
            try:
                matches = strategy.identify(data, max_results)
                return [match for match in matches if not self._backend_stale(match.subject_id)]
            except BackendUnavailable as exc:
                monitoring.record_fallback("identify", str(exc))
        else:
            monitoring.record_fallback("identify", "backend not available")
        return self._fallback().identify(data, max_results)

    def delete(self, subject_id: str) -> bool:
        """Forget a subject's enrollment locally and on the backend."""

        with self._locks.hold(subject_id):
            removed = self.enrollments.clear(subject_id)
            if self.backend is not None:
                try:
                    self.backend.delete_faces(subject_id)
                except BackendUnavailable:
                    logger.warning(
                        "Could not delete backend faces for %s",
                        subject_id,
                        exc_info=True,
                        extra={"event": "backend_delete_failed"},
                    )
        return removed


__all__ = [
    "BiometricAdapter",
    "BiometricMatch",
    "DESCRIPTOR_LENGTH",
    "FALLBACK_WARNING",
    "FallbackStrategy",
    "IdentityMatch",
    "PrimaryStrategy",
    "RegistrationResult",
    "content_descriptor",
    "decode_image",
    "descriptor_distance",
]
