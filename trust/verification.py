"""Top-level identity verification with lockout and failure tracking."""

from __future__ import annotations

import datetime as dt
import logging
import math
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Dict, Iterator, Optional

from . import monitoring
from .biometrics import BiometricAdapter, ImageInput
from .clock import SystemClock
from .conf import VerificationConfig
from .exceptions import (
    IdentityMismatch,
    InvalidImage,
    NotEnrolled,
    UserBlockedError,
)
from .fraud import FraudLedger
from .interfaces import Clock
from .locks import KeyedLocks
from .types import AttemptType, BiometricMode, Severity

logger = logging.getLogger(__name__)

ACCOUNT_LOCKED = UserBlockedError.code
NOT_ENROLLED = NotEnrolled.code
INVALID_IMAGE = InvalidImage.code
IDENTITY_MISMATCH = IdentityMismatch.code


@dataclass
class AttemptCounter:
    count: int = 0
    last_attempt_at: Optional[dt.datetime] = None
    consecutive_failures: int = 0


class AttemptCounterStore:
    """Process-local per-subject counters with idle expiry.

    Counters are ephemeral: they are never a source of truth across restarts.
    Idle counters are dropped at most once per ``ttl`` on access and whenever
    :meth:`purge_idle` runs from the background sweep.
    """

    def __init__(self, ttl: dt.timedelta, clock: Optional[Clock] = None) -> None:
        self.ttl = ttl
        self.clock = clock or SystemClock()
        self._counters: Dict[str, AttemptCounter] = {}
        self._guard = KeyedLocks()
        self._table_lock = threading.Lock()
        self._last_purge: Optional[dt.datetime] = None

    def __len__(self) -> int:
        with self._table_lock:
            return len(self._counters)

    def _is_stale(self, counter: AttemptCounter, now: dt.datetime) -> bool:
        return counter.last_attempt_at is not None and now - counter.last_attempt_at > self.ttl

    @contextmanager
    def hold(self, subject_id: str) -> Iterator[AttemptCounter]:
        """Yield the subject's counter with exclusive access."""

        with self._guard.hold(subject_id):
            now = self.clock.now()
            with self._table_lock:
                if self._last_purge is None or now - self._last_purge >= self.ttl:
                    self._purge_locked(now)
                counter = self._counters.get(subject_id)
                if counter is None or self._is_stale(counter, now):
                    counter = self._counters[subject_id] = AttemptCounter()
            yield counter

    def get(self, subject_id: str) -> Optional[AttemptCounter]:
        now = self.clock.now()
        with self._table_lock:
            counter = self._counters.get(subject_id)
            if counter is None or self._is_stale(counter, now):
                return None
            return replace(counter)

    def _purge_locked(self, now: dt.datetime) -> int:
        stale = [key for key, counter in self._counters.items() if self._is_stale(counter, now)]
        for key in stale:
            del self._counters[key]
        self._last_purge = now
        return len(stale)

    def purge_idle(self) -> int:
        now = self.clock.now()
        with self._table_lock:
            purged = self._purge_locked(now)
        if purged:
            logger.debug(
                "Dropped %d idle attempt counter(s)",
                purged,
                extra={"event": "attempt_counters_purged"},
            )
        return purged


@dataclass(frozen=True)
class VerificationResult:
    subject_id: str
    verified: bool
    confidence: int = 0
    mode: Optional[BiometricMode] = None
    error_code: Optional[str] = None
    remaining_seconds: Optional[int] = None
    blocked_until: Optional[dt.datetime] = None
    reason: Optional[str] = None
    warning: Optional[str] = None

    @property
    def remaining_minutes(self) -> Optional[int]:
        if self.remaining_seconds is None:
            return None
        return math.ceil(self.remaining_seconds / 60)

    def raise_for_outcome(self) -> None:
        """Raise the typed exception matching a negative result."""

        if self.verified:
            return
        if self.error_code == ACCOUNT_LOCKED and self.blocked_until is not None:
            raise UserBlockedError(self.blocked_until, self.reason)
        if self.error_code == NOT_ENROLLED:
            raise NotEnrolled(self.subject_id)
        if self.error_code == INVALID_IMAGE:
            raise InvalidImage(self.reason or "Image could not be used")
        raise IdentityMismatch(self.subject_id, self.confidence)


class VerificationOrchestrator:
    """Gate biometric verification on the fraud ledger and track failures.

    A blocked subject never reaches the biometric adapter. Consecutive
    failures are counted per subject; reaching the configured threshold
    records a single identity-mismatch attempt in the ledger.
    """

    def __init__(
        self,
        ledger: FraudLedger,
        biometrics: BiometricAdapter,
        *,
        counters: Optional[AttemptCounterStore] = None,
        config: Optional[VerificationConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.ledger = ledger
        self.biometrics = biometrics
        self.config = config or VerificationConfig.from_settings()
        self.clock = clock or SystemClock()
        self.counters = counters or AttemptCounterStore(self.config.counter_ttl, self.clock)

    def verify(self, subject_id: str, image: ImageInput) -> VerificationResult:
        block = self.ledger.is_blocked(subject_id)
        if block.blocked:
            now = self.clock.now()
            monitoring.record_verification("none", "locked")
            logger.info(
                "Verification refused for blocked subject %s",
                subject_id,
                extra={"event": "verification_locked"},
            )
            return VerificationResult(
                subject_id=subject_id,
                verified=False,
                error_code=ACCOUNT_LOCKED,
                remaining_seconds=math.ceil(block.remaining_seconds(now)),
                blocked_until=block.until,
                reason=block.reason.value if block.reason else None,
            )

        try:
            match = self.biometrics.verify(subject_id, image)
        except NotEnrolled:
            monitoring.record_verification("none", "not_enrolled")
            return VerificationResult(
                subject_id=subject_id, verified=False, error_code=NOT_ENROLLED
            )
        except InvalidImage as exc:
            monitoring.record_verification("none", "invalid_image")
            return VerificationResult(
                subject_id=subject_id, verified=False, error_code=INVALID_IMAGE, reason=str(exc)
            )

        threshold_reached = False
        with self.counters.hold(subject_id) as counter:
            counter.last_attempt_at = self.clock.now()
            counter.count += 1
            if match.verified:
                counter.count = 0
                counter.consecutive_failures = 0
            else:
                counter.consecutive_failures += 1
                threshold_reached = counter.consecutive_failures == self.config.failure_threshold
            failures = counter.consecutive_failures

        if threshold_reached:
            self.ledger.record(
                subject_id,
                AttemptType.IDENTITY_MISMATCH,
                Severity.MEDIUM,
                details={"consecutive_failures": failures, "mode": match.mode.value},
            )

        monitoring.record_verification(match.mode.value, "verified" if match.verified else "rejected")
        logger.info(
            "Verification for %s %s",
            subject_id,
            "succeeded" if match.verified else "failed",
            extra={
                "event": "verification_attempt",
                "mode": match.mode.value,
                "confidence": match.confidence,
                "consecutive_failures": failures,
            },
        )
        return VerificationResult(
            subject_id=subject_id,
            verified=match.verified,
            confidence=match.confidence,
            mode=match.mode,
            error_code=None if match.verified else IDENTITY_MISMATCH,
            warning=match.warning,
        )


__all__ = [
    "ACCOUNT_LOCKED",
    "AttemptCounter",
    "AttemptCounterStore",
    "IDENTITY_MISMATCH",
    "INVALID_IMAGE",
    "NOT_ENROLLED",
    "VerificationOrchestrator",
    "VerificationResult",
]
