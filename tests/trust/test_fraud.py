"""Tests for the fraud ledger and its escalation policy."""

from __future__ import annotations

import datetime as dt
import threading

import pytest

from trust.conf import EscalationPolicy
from trust.fraud import FraudLedger
from trust.types import AttemptType, FraudAction, Severity


def test_policy_priority_order():
    policy = EscalationPolicy()
    now = dt.datetime(2026, 3, 2, tzinfo=dt.timezone.utc)

    assert policy.decide(Severity.LOW, 1, now) == (FraudAction.LOGGED, None)
    assert policy.decide(Severity.LOW, 2, now) == (FraudAction.WARNED, None)
    assert policy.decide(Severity.MEDIUM, 3, now) == (FraudAction.ESCALATED, None)
    assert policy.decide(Severity.HIGH, 1, now) == (FraudAction.ESCALATED, None)
    assert policy.decide(Severity.CRITICAL, 1, now) == (
        FraudAction.BLOCKED,
        now + dt.timedelta(hours=24),
    )
    assert policy.decide(Severity.LOW, 5, now)[0] is FraudAction.BLOCKED


def test_fifth_attempt_in_window_blocks_for_exactly_24_hours(ledger, clock):
    actions = []
    for _ in range(5):
        clock.advance(minutes=30)
        actions.append(ledger.record("guard-7", AttemptType.PHOTO_SPOOF, Severity.MEDIUM))

    assert [record.action_taken for record in actions] == [
        FraudAction.LOGGED,
        FraudAction.WARNED,
        FraudAction.ESCALATED,
        FraudAction.ESCALATED,
        FraudAction.BLOCKED,
    ]
    fifth = actions[-1]
    assert fifth.blocked_until == fifth.created_at + dt.timedelta(hours=24)
    assert fifth.blocked_until == clock.now() + dt.timedelta(hours=24)


def test_attempts_outside_window_do_not_count(ledger, clock):
    ledger.record("guard-7", AttemptType.OTHER, Severity.LOW)
    clock.advance(hours=25)

    record = ledger.record("guard-7", AttemptType.OTHER, Severity.LOW)

    assert record.action_taken is FraudAction.LOGGED


def test_counts_are_per_subject(ledger):
    ledger.record("guard-1", AttemptType.OTHER, Severity.LOW)

    record = ledger.record("guard-2", AttemptType.OTHER, Severity.LOW)

    assert record.action_taken is FraudAction.LOGGED


def test_is_blocked_reports_until_and_category(ledger, clock):
    record = ledger.record("guard-3", AttemptType.GPS_SPOOF, Severity.CRITICAL)
    clock.advance(hours=1)

    status = ledger.is_blocked("guard-3")

    assert status.blocked is True
    assert status.until == record.blocked_until
    assert status.reason is AttemptType.GPS_SPOOF
    assert status.remaining_minutes(clock.now()) == 23 * 60


def test_block_lifts_after_duration(ledger, clock):
    ledger.record("guard-3", AttemptType.GPS_SPOOF, Severity.CRITICAL)
    clock.advance(hours=24)

    assert ledger.is_blocked("guard-3").blocked is False


def test_escalated_attempts_do_not_block(ledger):
    ledger.record("guard-4", AttemptType.SCREEN_SPOOF, Severity.HIGH)

    assert ledger.is_blocked("guard-4").blocked is False


def test_records_are_immutable(ledger):
    record = ledger.record("guard-5", AttemptType.OTHER, Severity.LOW, evidence=b"blob")

    with pytest.raises(AttributeError):
        record.action_taken = FraudAction.BLOCKED  # type: ignore[misc]


def test_recent_attempts_newest_first(ledger, clock):
    first = ledger.record("guard-6", AttemptType.OTHER, Severity.LOW)
    clock.advance(minutes=5)
    second = ledger.record("guard-6", AttemptType.OUT_OF_ZONE, Severity.MEDIUM)
    clock.advance(hours=3)

    assert ledger.recent_attempts("guard-6") == [second, first]
    assert ledger.recent_attempts("guard-6", hours=1) == []


def test_string_enum_values_are_accepted(ledger):
    record = ledger.record("guard-8", "gps-spoof", "critical")

    assert record.attempt_type is AttemptType.GPS_SPOOF
    assert record.action_taken is FraudAction.BLOCKED


def test_concurrent_records_escalate_exactly_once(sink, clock):
    ledger = FraudLedger(sink, clock=clock, policy=EscalationPolicy())
    barrier = threading.Barrier(10)

    def worker():
        barrier.wait()
        ledger.record("guard-9", AttemptType.MULTI_DEVICE, Severity.LOW)

    threads = [threading.Thread(target=worker) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    actions = [record.action_taken for record in sink.fraud_records]
    assert actions.count(FraudAction.LOGGED) == 1
    assert actions.count(FraudAction.WARNED) == 1
    assert actions.count(FraudAction.ESCALATED) == 2
    assert actions.count(FraudAction.BLOCKED) == 6
