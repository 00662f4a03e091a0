"""Admin registrations for the trust app.

Ledger and log tables are read-only here; they are written by the pipeline.
"""

from django.contrib import admin

from .models import FaceEnrollment, FraudAttempt, GeoTrackingPoint, LivenessLog


class ReadOnlyAdmin(admin.ModelAdmin):
    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(FraudAttempt)
class FraudAttemptAdmin(ReadOnlyAdmin):
    """Audit view over the append-only fraud ledger."""

    list_display = (
        "created_at",
        "subject_id",
        "attempt_type",
        "severity",
        "action_taken",
        "blocked_until",
    )
    list_filter = ("attempt_type", "severity", "action_taken")
    search_fields = ("subject_id", "record_id")
    ordering = ("-created_at",)
    exclude = ("evidence",)

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(LivenessLog)
class LivenessLogAdmin(ReadOnlyAdmin):
    list_display = (
        "created_at",
        "subject_id",
        "check_type",
        "result",
        "confidence",
        "frames_analyzed",
        "duration_ms",
    )
    list_filter = ("check_type", "result")
    search_fields = ("subject_id", "session_id")
    ordering = ("-created_at",)


@admin.register(GeoTrackingPoint)
class GeoTrackingPointAdmin(ReadOnlyAdmin):
    list_display = ("recorded_at", "subject_id", "latitude", "longitude", "accuracy_meters", "is_mock")
    list_filter = ("is_mock",)
    search_fields = ("subject_id",)
    ordering = ("-recorded_at",)


@admin.register(FaceEnrollment)
class FaceEnrollmentAdmin(ReadOnlyAdmin):
    """Enrollment metadata only; descriptor ciphertext is never rendered."""

    list_display = ("subject_id", "mode", "backend_stale", "image_count", "enrolled_at", "updated_at")
    list_filter = ("mode", "backend_stale")
    search_fields = ("subject_id",)
    ordering = ("subject_id",)
    exclude = ("descriptor_ciphertext",)
