"""Typed failures raised by the presence trust pipeline.

Each exception carries a machine-readable ``code`` so callers (the check-in
handler, Celery tasks, admin tooling) can surface an actionable message
without parsing exception text.
"""

from __future__ import annotations

import datetime as dt
import math
from typing import Optional


class TrustError(Exception):
    """Base class for all trust pipeline failures."""

    code = "TRUST_ERROR"


class InvalidLocation(TrustError, ValueError):
    """Coordinates or accuracy of a location sample are malformed."""

    code = "INVALID_LOCATION"


class InsufficientSamples(TrustError):
    """Face registration received no usable image."""

    code = "INSUFFICIENT_SAMPLES"


class InvalidThreshold(TrustError, ValueError):
    """A recognition threshold outside the accepted range was requested."""

    code = "INVALID_THRESHOLD"


class InvalidImage(TrustError, ValueError):
    """Image payload could not be decoded or is too small to compare."""

    code = "INVALID_IMAGE"


class UserBlockedError(TrustError):
    """The subject is locked out by the fraud ledger."""

    code = "ACCOUNT_LOCKED"

    def __init__(self, until: Optional[dt.datetime], reason: Optional[str] = None) -> None:
        self.until = until
        self.reason = reason
        expiry = until.isoformat() if until is not None else "further notice"
        super().__init__(f"Subject is blocked until {expiry} ({reason or 'unspecified'})")

    def remaining_minutes(self, now: dt.datetime) -> int:
        """Whole minutes left before the block lifts, rounded up."""

        if self.until is None:
            return 0
        remaining = (self.until - now).total_seconds()
        return max(0, math.ceil(remaining / 60))


class StaleSessionError(TrustError):
    """A frame or finalize call targeted an expired or unknown session."""

    code = "SESSION_EXPIRED"

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(f"Liveness session {session_id!r} is expired or unknown")


class NotEnrolled(TrustError):
    """Verification was attempted for a subject with no stored descriptor."""

    code = "NOT_ENROLLED"

    def __init__(self, subject_id: str) -> None:
        self.subject_id = subject_id
        super().__init__(f"Subject {subject_id!r} has no enrolled face")


class BackendUnavailable(TrustError):
    """The external recognition backend failed structurally.

    Only raised between the HTTP client and the biometric adapter; the
    adapter always absorbs it into a fallback-mode result.
    """

    code = "BACKEND_UNAVAILABLE"


class IdentityMismatch(TrustError):
    """Verification completed but the face did not match the subject."""

    code = "IDENTITY_MISMATCH"

    def __init__(self, subject_id: str, confidence: int = 0) -> None:
        self.subject_id = subject_id
        self.confidence = confidence
        super().__init__(f"Face did not match subject {subject_id!r} (confidence {confidence})")


__all__ = [
    "BackendUnavailable",
    "IdentityMismatch",
    "InsufficientSamples",
    "InvalidImage",
    "InvalidLocation",
    "InvalidThreshold",
    "NotEnrolled",
    "StaleSessionError",
    "TrustError",
    "UserBlockedError",
]
