"""End-to-end check-in flows through the service facade."""

from __future__ import annotations

import datetime as dt
import time

import pytest

from trust.exceptions import StaleSessionError, UserBlockedError
from trust.geo import Geofence
from trust.liveness import LivenessCompletion
from trust.services import PresenceTrustService, build_service
from trust.stores import DjangoEnrollmentStore, DjangoLocationHistory, DjangoLogSink
from trust.types import LivenessStatus, LocationSample
from trust.verification import ACCOUNT_LOCKED

SITE = Geofence(48.8566, 2.3522, radius_meters=150)


@pytest.fixture
def service(history, enrollments, sink, clock, rng):
    return PresenceTrustService(
        history=history, enrollments=enrollments, sink=sink, clock=clock, rng=rng
    )


def _fix(clock, lat=48.8566, lon=2.3522, **extra):
    return LocationSample("guard-1", lat, lon, clock.now(), **extra)


def test_check_in_flow(service, clock, sink, image_factory):
    face = image_factory("guard-1-face")
    service.register_face("guard-1", [face])

    tracking = service.record_location(_fix(clock, accuracy_meters=12.0), geofence=SITE)
    ticket = service.start_liveness_session("guard-1")
    for index in range(12):
        clock.advance(seconds=1)
        service.submit_liveness_frame(ticket.session_id, b"frame-%d" % index)
    liveness = service.complete_liveness(ticket.session_id)
    verification = service.verify_identity("guard-1", face)

    assert tracking.accepted and tracking.within_geofence
    assert isinstance(liveness, LivenessCompletion)
    assert liveness.passed
    assert verification.verified
    assert sink.fraud_records == []
    assert [match.subject_id for match in service.identify_face(face)] == ["guard-1"]


def test_teleport_locks_out_check_in(service, clock, image_factory):
    face = image_factory("guard-1-face")
    service.register_face("guard-1", [face])
    service.record_location(_fix(clock))
    clock.advance(seconds=60)

    service.record_location(_fix(clock, lat=49.75))

    status = service.is_blocked("guard-1")
    assert status.blocked
    assert status.until == clock.now() + dt.timedelta(hours=24)
    assert service.verify_identity("guard-1", face).error_code == ACCOUNT_LOCKED
    with pytest.raises(UserBlockedError):
        service.start_liveness_session("guard-1")


def test_delete_face_forgets_subject(service, image_factory):
    service.register_face("guard-1", [image_factory("face")])

    assert service.delete_face("guard-1") is True
    assert service.verify_identity("guard-1", image_factory("face")).error_code == "NOT_ENROLLED"


def test_reaper_lifecycle(service, clock, sink):
    ticket = service.start_liveness_session("guard-1")
    clock.advance(seconds=200)
    service.start()
    try:
        service.liveness.reap_expired()
    finally:
        service.stop()

    assert sink.liveness_records[0].result is LivenessStatus.TIMEOUT
    with pytest.raises(StaleSessionError):
        service.submit_liveness_frame(ticket.session_id, b"frame")


def test_background_sweep_drops_idle_counters(service, clock, image_factory):
    service.register_face("guard-1", [image_factory("guard-1-face")])
    service.verify_identity("guard-1", image_factory("someone else"))
    assert len(service.verification.counters) == 1
    clock.advance(days=1)

    service.liveness.start_reaper(interval=0.01)
    try:
        deadline = time.monotonic() + 5
        while len(service.verification.counters) and time.monotonic() < deadline:
            time.sleep(0.01)
    finally:
        service.stop()

    assert len(service.verification.counters) == 0


def test_service_context_runs_sweep(service):
    with service as running:
        assert running.liveness.reaper_running

    assert not service.liveness.reaper_running


@pytest.mark.django_db
def test_build_service_wires_django_stores(settings):
    settings.COMPREFACE_URL = ""

    service = build_service(start=False)

    assert isinstance(service.tracker.history, DjangoLocationHistory)
    assert isinstance(service.biometrics.enrollments, DjangoEnrollmentStore)
    assert isinstance(service.ledger.sink, DjangoLogSink)
    assert service.biometrics.backend is None
    assert not service.liveness.reaper_running


@pytest.mark.django_db
def test_build_service_starts_background_sweep(settings):
    settings.COMPREFACE_URL = ""

    service = build_service()
    try:
        assert service.liveness.reaper_running
    finally:
        service.stop()

    assert not service.liveness.reaper_running
