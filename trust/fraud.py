"""Append-only fraud ledger and the lockout gate built on it."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, List, Optional

from . import monitoring
from .clock import SystemClock
from .conf import EscalationPolicy
from .interfaces import Clock, DurableLogSink
from .locks import KeyedLocks
from .types import (
    NOT_BLOCKED,
    AttemptType,
    BlockStatus,
    FraudAction,
    FraudAttemptRecord,
    Severity,
)

logger = logging.getLogger(__name__)


class FraudLedger:
    """Record fraud attempts and answer whether a subject is locked out.

    Recording is serialised per subject so the trailing-window count that
    drives escalation never double counts or drops a concurrent attempt.
    Block status is read from the sink on every call.
    """

    def __init__(
        self,
        sink: DurableLogSink,
        *,
        clock: Optional[Clock] = None,
        policy: Optional[EscalationPolicy] = None,
        locks: Optional[KeyedLocks] = None,
    ) -> None:
        self.sink = sink
        self.clock = clock or SystemClock()
        self.policy = policy or EscalationPolicy.from_settings()
        self._locks = locks or KeyedLocks()

    def record(
        self,
        subject_id: str,
        attempt_type: AttemptType,
        severity: Severity,
        evidence: Optional[bytes] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> FraudAttemptRecord:
        attempt_type = AttemptType(attempt_type)
        severity = Severity(severity)
        with self._locks.hold(subject_id):
            now = self.clock.now()
            prior = self.sink.fraud_since(subject_id, now - self.policy.window)
            trailing_count = len(prior) + 1
            action, blocked_until = self.policy.decide(severity, trailing_count, now)
            record = FraudAttemptRecord(
                subject_id=subject_id,
                attempt_type=attempt_type,
                severity=severity,
                created_at=now,
                action_taken=action,
                blocked_until=blocked_until,
                evidence=evidence,
                details=dict(details or {}),
            )
            self.sink.append_fraud(record)

        monitoring.record_fraud_attempt(attempt_type.value, action.value)
        log_extra = {
            "event": "fraud_recorded",
            "subject_id": subject_id,
            "attempt_type": attempt_type.value,
            "severity": severity.value,
            "action": action.value,
            "trailing_count": trailing_count,
        }
        if action is FraudAction.BLOCKED:
            logger.warning(
                "Subject %s blocked until %s",
                subject_id,
                blocked_until.isoformat() if blocked_until else None,
                extra=log_extra,
            )
        else:
            logger.warning("Fraud attempt recorded for %s", subject_id, extra=log_extra)
        return record

    def is_blocked(self, subject_id: str) -> BlockStatus:
        """Return the lockout in force for ``subject_id`` right now."""

        now = self.clock.now()
        records = self.sink.fraud_since(subject_id, now - self.policy.block_duration)
        active = [record for record in records if record.blocks_at(now)]
        if not active:
            return NOT_BLOCKED
        latest = max(active, key=lambda record: (record.created_at, record.blocked_until))
        return BlockStatus(blocked=True, until=latest.blocked_until, reason=latest.attempt_type)

    def recent_attempts(self, subject_id: str, hours: float = 24) -> List[FraudAttemptRecord]:
        """List a subject's attempts in the last ``hours``, newest first."""

        since = self.clock.now() - dt.timedelta(hours=hours)
        records = self.sink.fraud_since(subject_id, since)
        return sorted(records, key=lambda record: record.created_at, reverse=True)


__all__ = ["EscalationPolicy", "FraudLedger"]
