"""Tests for the verification orchestrator and its attempt counters."""

from __future__ import annotations

import datetime as dt

import pytest

from trust.biometrics import BiometricAdapter
from trust.conf import BiometricConfig, VerificationConfig
from trust.exceptions import BackendUnavailable, IdentityMismatch, UserBlockedError
from trust.types import AttemptType, BiometricMode, FraudAction, Severity
from trust.verification import (
    ACCOUNT_LOCKED,
    IDENTITY_MISMATCH,
    INVALID_IMAGE,
    NOT_ENROLLED,
    AttemptCounterStore,
    VerificationOrchestrator,
)


class TimingOutBackend:
    def health_check(self):
        return True

    def add_face(self, subject_id, image):
        return "img-1"

    def delete_faces(self, subject_id):
        return None

    def recognize(self, image, *, limit=5):
        raise BackendUnavailable("recognize timed out")


class SpyAdapter:
    def __init__(self, adapter):
        self.adapter = adapter
        self.calls = 0

    def verify(self, subject_id, image):
        self.calls += 1
        return self.adapter.verify(subject_id, image)


@pytest.fixture
def adapter(enrollments, clock):
    return BiometricAdapter(enrollments, None, config=BiometricConfig(), clock=clock)


@pytest.fixture
def orchestrator(ledger, adapter, clock):
    return VerificationOrchestrator(ledger, adapter, config=VerificationConfig(), clock=clock)


def test_successful_verification(orchestrator, adapter, image_factory):
    image = image_factory("guard-1")
    adapter.register("guard-1", [image])

    result = orchestrator.verify("guard-1", image)

    assert result.verified is True
    assert result.error_code is None
    assert result.mode is BiometricMode.FALLBACK
    assert result.warning is not None
    result.raise_for_outcome()


def test_backend_timeout_returns_fallback_result(ledger, enrollments, clock, image_factory):
    adapter = BiometricAdapter(enrollments, TimingOutBackend(), config=BiometricConfig(), clock=clock)
    orchestrator = VerificationOrchestrator(ledger, adapter, config=VerificationConfig(), clock=clock)
    image = image_factory("guard-1")
    adapter.register("guard-1", [image])

    result = orchestrator.verify("guard-1", image_factory("someone else"))

    assert result.mode is BiometricMode.FALLBACK
    assert result.verified is False
    assert 0 <= result.confidence < 50


def test_third_consecutive_failure_records_one_mismatch(orchestrator, adapter, sink, image_factory):
    adapter.register("guard-1", [image_factory("enrolled")])

    for attempt in range(5):
        orchestrator.verify("guard-1", image_factory(f"impostor-{attempt}"))
        if attempt == 1:
            assert sink.fraud_records == []

    [record] = sink.fraud_records
    assert record.attempt_type is AttemptType.IDENTITY_MISMATCH
    assert record.severity is Severity.MEDIUM
    assert record.details["consecutive_failures"] == 3
    assert orchestrator.counters.get("guard-1").consecutive_failures == 5


def test_counter_resets_only_on_success(orchestrator, adapter, sink, image_factory):
    enrolled = image_factory("enrolled")
    adapter.register("guard-1", [enrolled])

    orchestrator.verify("guard-1", image_factory("bad-1"))
    orchestrator.verify("guard-1", image_factory("bad-2"))
    counter = orchestrator.counters.get("guard-1")
    assert (counter.count, counter.consecutive_failures) == (2, 2)

    orchestrator.verify("guard-1", enrolled)
    counter = orchestrator.counters.get("guard-1")
    assert (counter.count, counter.consecutive_failures) == (0, 0)

    orchestrator.verify("guard-1", image_factory("bad-3"))
    orchestrator.verify("guard-1", image_factory("bad-4"))
    assert sink.fraud_records == []


def test_failed_result_raises_identity_mismatch(orchestrator, adapter, image_factory):
    adapter.register("guard-1", [image_factory("enrolled")])

    result = orchestrator.verify("guard-1", image_factory("other"))

    assert result.error_code == IDENTITY_MISMATCH
    with pytest.raises(IdentityMismatch):
        result.raise_for_outcome()


def test_blocked_subject_never_reaches_adapter(ledger, adapter, clock, image_factory):
    spy = SpyAdapter(adapter)
    orchestrator = VerificationOrchestrator(ledger, spy, config=VerificationConfig(), clock=clock)
    ledger.record("guard-1", AttemptType.GPS_SPOOF, Severity.CRITICAL)
    clock.advance(minutes=30, seconds=20)

    result = orchestrator.verify("guard-1", image_factory("any"))

    assert spy.calls == 0
    assert result.verified is False
    assert result.error_code == ACCOUNT_LOCKED
    assert result.reason == "gps-spoof"
    assert result.remaining_seconds == 23 * 3600 + 29 * 60 + 40
    assert result.remaining_minutes == 23 * 60 + 30
    with pytest.raises(UserBlockedError):
        result.raise_for_outcome()


def test_not_enrolled_and_invalid_image_are_not_counted(orchestrator, adapter, image_factory):
    missing = orchestrator.verify("ghost", image_factory("x"))
    adapter.register("guard-1", [image_factory("enrolled")])
    invalid = orchestrator.verify("guard-1", b"tiny")

    assert missing.error_code == NOT_ENROLLED
    assert invalid.error_code == INVALID_IMAGE
    assert orchestrator.counters.get("ghost") is None
    assert orchestrator.counters.get("guard-1") is None


def test_repeated_mismatches_eventually_block(ledger, orchestrator, adapter, clock, image_factory):
    adapter.register("guard-1", [image_factory("enrolled")])
    for round_number in range(5):
        clock.advance(minutes=1)
        for attempt in range(3):
            orchestrator.verify("guard-1", image_factory(f"bad-{round_number}-{attempt}"))
        orchestrator.verify("guard-1", image_factory("enrolled"))

    actions = [record.action_taken for record in ledger.recent_attempts("guard-1")]
    assert actions[0] is FraudAction.BLOCKED
    assert orchestrator.verify("guard-1", image_factory("enrolled")).error_code == ACCOUNT_LOCKED


def test_counter_store_expires_idle_counters(clock):
    store = AttemptCounterStore(dt.timedelta(minutes=15), clock)
    with store.hold("guard-1") as counter:
        counter.count = 2
        counter.last_attempt_at = clock.now()

    clock.advance(minutes=16)

    assert store.get("guard-1") is None
    assert store.purge_idle() == 1
    with store.hold("guard-1") as counter:
        assert counter.count == 0


def test_idle_counters_do_not_accumulate(orchestrator, adapter, clock, image_factory):
    for number in range(50):
        subject_id = f"guard-{number}"
        adapter.register(subject_id, [image_factory(f"{subject_id}-face")])
        orchestrator.verify(subject_id, image_factory(f"{subject_id}-impostor"))
    assert len(orchestrator.counters) == 50

    clock.advance(days=30)
    orchestrator.verify("guard-0", image_factory("guard-0-impostor"))

    assert len(orchestrator.counters) == 1
    assert orchestrator.counters.get("guard-0").count == 1
