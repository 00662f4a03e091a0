"""Tests for the biometric adapter and its fallback comparator."""

from __future__ import annotations

import base64

import pytest

from trust import monitoring
from trust.biometrics import (
    FALLBACK_WARNING,
    BiometricAdapter,
    content_descriptor,
    decode_image,
    descriptor_distance,
)
from trust.conf import BiometricConfig
from trust.exceptions import (
    BackendUnavailable,
    InsufficientSamples,
    InvalidImage,
    InvalidThreshold,
    NotEnrolled,
)
from trust.types import BiometricMode


class FakeBackend:
    """Recognition backend double with scripted answers."""

    def __init__(self, *, healthy=True, scores=None, fail_on=()):
        self.healthy = healthy
        self.scores = scores or {}
        self.fail_on = set(fail_on)
        self.faces = {}
        self.calls = []

    def _maybe_fail(self, operation):
        self.calls.append(operation)
        if operation in self.fail_on:
            raise BackendUnavailable(f"{operation} timed out")

    def health_check(self):
        return self.healthy

    def add_face(self, subject_id, image):
        self._maybe_fail("add_face")
        self.faces.setdefault(subject_id, []).append(image)
        return f"img-{len(self.faces[subject_id])}"

    def delete_faces(self, subject_id):
        self._maybe_fail("delete_faces")
        self.faces.pop(subject_id, None)

    def recognize(self, image, *, limit=5):
        self._maybe_fail("recognize")
        ranked = sorted(self.scores.items(), key=lambda item: item[1], reverse=True)
        return ranked[:limit]


@pytest.fixture
def config():
    return BiometricConfig(recognition_threshold=0.85, fallback_distance_threshold=0.5, min_image_bytes=1000)


def test_decode_image_accepts_data_uri(image_factory):
    raw = image_factory("abc")
    encoded = "data:image/jpeg;base64," + base64.b64encode(raw).decode()

    assert decode_image(encoded) == raw


@pytest.mark.parametrize("payload", ["not base64!!", b"", 42])
def test_decode_image_rejects_garbage(payload):
    with pytest.raises(InvalidImage):
        decode_image(payload)


def test_decode_image_enforces_minimum_size():
    with pytest.raises(InvalidImage):
        decode_image(b"tiny", min_bytes=1000)


def test_content_descriptor_is_stable_and_bounded(image_factory):
    first = content_descriptor(image_factory("a"))
    again = content_descriptor(image_factory("a"))

    assert len(first) == 32
    assert descriptor_distance(first, again) == 0
    assert first.values.min() >= 0 and first.values.max() <= 1


def test_register_then_verify_same_image_in_fallback(enrollments, clock, config, image_factory):
    adapter = BiometricAdapter(enrollments, None, config=config, clock=clock)
    image = image_factory("guard-1-face")

    registration = adapter.register("guard-1", [image])
    match = adapter.verify("guard-1", image)

    assert registration.mode is BiometricMode.FALLBACK
    assert registration.warning == FALLBACK_WARNING
    assert match.verified is True
    assert match.distance == 0
    assert match.confidence == 100
    assert match.mode is BiometricMode.FALLBACK
    assert match.warning == FALLBACK_WARNING


def test_fallback_rejects_different_image(enrollments, clock, config, image_factory):
    adapter = BiometricAdapter(enrollments, None, config=config, clock=clock)
    adapter.register("guard-1", [image_factory("one")])

    match = adapter.verify("guard-1", image_factory("two"))

    assert match.verified is False
    assert match.distance > 0.5


def test_register_skips_invalid_images(enrollments, clock, config, image_factory):
    adapter = BiometricAdapter(enrollments, None, config=config, clock=clock)

    result = adapter.register("guard-1", [b"short", image_factory("ok"), "%%%"])

    assert result.image_count == 1
    assert enrollments.get("guard-1").image_count == 1


def test_register_without_valid_images_fails(enrollments, clock, config):
    adapter = BiometricAdapter(enrollments, None, config=config, clock=clock)

    with pytest.raises(InsufficientSamples):
        adapter.register("guard-1", [b"short"])


def test_reenrollment_replaces_descriptor(enrollments, clock, config, image_factory):
    adapter = BiometricAdapter(enrollments, None, config=config, clock=clock)
    adapter.register("guard-1", [image_factory("old")])
    adapter.register("guard-1", [image_factory("new")])

    assert adapter.verify("guard-1", image_factory("new")).verified is True
    assert adapter.verify("guard-1", image_factory("old")).verified is False
    assert list(enrollments.subjects()) == ["guard-1"]


def test_verify_unknown_subject_raises_not_enrolled(enrollments, clock, config, image_factory):
    adapter = BiometricAdapter(enrollments, None, config=config, clock=clock)

    with pytest.raises(NotEnrolled):
        adapter.verify("ghost", image_factory("x"))


def test_primary_mode_uses_backend_similarity(enrollments, clock, config, image_factory):
    backend = FakeBackend(scores={"guard-1": 0.93, "guard-2": 0.4})
    adapter = BiometricAdapter(enrollments, backend, config=config, clock=clock)
    registration = adapter.register("guard-1", [image_factory("a"), image_factory("b")])

    match = adapter.verify("guard-1", image_factory("c"))

    assert registration.mode is BiometricMode.PRIMARY
    assert registration.warning is None
    assert backend.calls[:3] == ["delete_faces", "add_face", "add_face"]
    assert match.mode is BiometricMode.PRIMARY
    assert match.verified is True
    assert match.confidence == 93
    assert match.warning is None


def test_primary_below_threshold_is_rejected(enrollments, clock, config, image_factory):
    backend = FakeBackend(scores={"guard-1": 0.6})
    adapter = BiometricAdapter(enrollments, backend, config=config, clock=clock)
    adapter.register("guard-1", [image_factory("a")])

    match = adapter.verify("guard-1", image_factory("a"))

    assert match.verified is False
    assert match.confidence == 60


def test_backend_timeout_on_verify_falls_back(enrollments, clock, config, image_factory):
    backend = FakeBackend(scores={"guard-1": 0.99}, fail_on={"recognize"})
    adapter = BiometricAdapter(enrollments, backend, config=config, clock=clock)
    image = image_factory("guard-1")
    adapter.register("guard-1", [image])

    match = adapter.verify("guard-1", image)

    assert match.mode is BiometricMode.FALLBACK
    assert match.verified is True
    assert match.confidence == 100
    assert monitoring.get_metrics_snapshot()["fallback"]["verify"] == 1


def test_unhealthy_backend_selects_fallback(enrollments, clock, config, image_factory):
    backend = FakeBackend(healthy=False)
    adapter = BiometricAdapter(enrollments, backend, config=config, clock=clock)

    result = adapter.register("guard-1", [image_factory("a")])

    assert result.mode is BiometricMode.FALLBACK
    assert backend.calls == []


def test_registration_survives_backend_failure(enrollments, clock, config, image_factory):
    backend = FakeBackend(fail_on={"add_face"})
    adapter = BiometricAdapter(enrollments, backend, config=config, clock=clock)

    result = adapter.register("guard-1", [image_factory("a")])

    assert result.mode is BiometricMode.FALLBACK
    assert enrollments.get("guard-1").mode is BiometricMode.FALLBACK


def test_identify_ranks_candidates(enrollments, clock, config, image_factory):
    backend = FakeBackend(scores={"guard-1": 0.88, "guard-2": 0.95, "guard-3": 0.2})
    adapter = BiometricAdapter(enrollments, backend, config=config, clock=clock)

    matches = adapter.identify(image_factory("query"))

    assert [match.subject_id for match in matches] == ["guard-2", "guard-1"]


def test_identify_in_fallback_finds_exact_match(enrollments, clock, config, image_factory):
    adapter = BiometricAdapter(enrollments, None, config=config, clock=clock)
    adapter.register("guard-1", [image_factory("one")])
    adapter.register("guard-2", [image_factory("two")])

    [match] = adapter.identify(image_factory("two"))

    assert match.subject_id == "guard-2"
    assert match.mode is BiometricMode.FALLBACK


@pytest.mark.parametrize("value", [0.05, 0.95, "high", None])
def test_adjust_threshold_rejects_out_of_range(enrollments, config, value):
    adapter = BiometricAdapter(enrollments, None, config=config)

    with pytest.raises(InvalidThreshold):
        adapter.adjust_threshold(value)
    assert adapter.threshold == 0.85


def test_adjust_threshold_applies_to_primary(enrollments, clock, config, image_factory):
    backend = FakeBackend(scores={"guard-1": 0.7})
    adapter = BiometricAdapter(enrollments, backend, config=config, clock=clock)
    adapter.register("guard-1", [image_factory("a")])

    assert adapter.adjust_threshold(0.6) == 0.6
    assert adapter.verify("guard-1", image_factory("a")).verified is True


def test_delete_clears_local_and_backend(enrollments, clock, config, image_factory):
    backend = FakeBackend()
    adapter = BiometricAdapter(enrollments, backend, config=config, clock=clock)
    adapter.register("guard-1", [image_factory("a")])

    assert adapter.delete("guard-1") is True
    assert enrollments.get("guard-1") is None
    assert "guard-1" not in backend.faces
    assert adapter.delete("guard-1") is False


def test_reenrollment_during_outage_ignores_old_backend_faces(enrollments, clock, config, image_factory):
    backend = FakeBackend(scores={"guard-1": 0.99})
    adapter = BiometricAdapter(enrollments, backend, config=config, clock=clock)
    adapter.register("guard-1", [image_factory("old-face")])

    backend.healthy = False
    result = adapter.register("guard-1", [image_factory("new-face")])
    backend.healthy = True

    assert result.mode is BiometricMode.FALLBACK
    assert backend.faces["guard-1"] == [image_factory("old-face")]
    assert enrollments.get("guard-1").backend_stale is True
    old = adapter.verify("guard-1", image_factory("old-face"))
    assert old.mode is BiometricMode.FALLBACK
    assert old.verified is False
    assert adapter.verify("guard-1", image_factory("new-face")).verified is True
    assert adapter.identify(image_factory("old-face")) == []
    assert monitoring.get_metrics_snapshot()["fallback"]["verify"] == 2


def test_failed_backend_delete_is_cleared_by_next_primary_registration(
    enrollments, clock, config, image_factory
):
    backend = FakeBackend(scores={"guard-1": 0.97})
    adapter = BiometricAdapter(enrollments, backend, config=config, clock=clock)
    adapter.register("guard-1", [image_factory("old-face")])

    backend.fail_on = {"delete_faces"}
    adapter.register("guard-1", [image_factory("new-face")])
    assert enrollments.get("guard-1").backend_stale is True
    assert adapter.verify("guard-1", image_factory("old-face")).mode is BiometricMode.FALLBACK

    backend.fail_on = set()
    result = adapter.register("guard-1", [image_factory("new-face")])

    assert result.mode is BiometricMode.PRIMARY
    assert enrollments.get("guard-1").backend_stale is False
    assert backend.faces["guard-1"] == [image_factory("new-face")]
    assert adapter.verify("guard-1", image_factory("new-face")).mode is BiometricMode.PRIMARY


def test_first_enrollment_during_outage_is_not_stale(enrollments, clock, config, image_factory):
    backend = FakeBackend(healthy=False)
    adapter = BiometricAdapter(enrollments, backend, config=config, clock=clock)

    adapter.register("guard-1", [image_factory("a")])

    assert enrollments.get("guard-1").backend_stale is False
