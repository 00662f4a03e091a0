import datetime as dt

from django.utils import timezone

import pytest

from trust.models import GeoTrackingPoint, LivenessLog
from trust.tasks import prune_liveness_logs, prune_location_samples

pytestmark = pytest.mark.django_db


def test_prune_tasks_delete_expired_rows(settings):
    settings.CELERY_TASK_ALWAYS_EAGER = True
    settings.LIVENESS_LOG_RETENTION_DAYS = 90
    settings.LOCATION_SAMPLE_RETENTION_DAYS = 30
    old = timezone.now() - dt.timedelta(days=365)
    LivenessLog.objects.create(
        session_id="stale", subject_id="guard-1", check_type="facial", result="timeout", created_at=old
    )
    GeoTrackingPoint.objects.create(subject_id="guard-1", latitude=0, longitude=0, recorded_at=old)
    GeoTrackingPoint.objects.create(subject_id="guard-1", latitude=0, longitude=0)

    assert prune_liveness_logs.apply().get() == {"deleted": 1}
    assert prune_location_samples.apply().get() == {"deleted": 1}
    assert GeoTrackingPoint.objects.count() == 1


def test_beat_schedule_references_registered_tasks(settings):
    scheduled = {entry["task"] for entry in settings.CELERY_BEAT_SCHEDULE.values()}

    assert scheduled == {prune_liveness_logs.name, prune_location_samples.name}
