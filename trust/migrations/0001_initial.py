import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="FaceEnrollment",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                ("subject_id", models.CharField(max_length=150, unique=True)),
                (
                    "descriptor_ciphertext",
                    models.BinaryField(
                        help_text="Fernet token of the float64 descriptor; never plaintext"
                    ),
                ),
                ("image_count", models.PositiveIntegerField(default=1)),
                (
                    "mode",
                    models.CharField(
                        choices=[("primary", "Primary"), ("fallback", "Fallback")],
                        default="fallback",
                        max_length=16,
                    ),
                ),
                ("enrolled_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "verbose_name": "Face Enrollment",
                "verbose_name_plural": "Face Enrollments",
                "ordering": ["subject_id"],
            },
        ),
        migrations.CreateModel(
            name="GeoTrackingPoint",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                ("subject_id", models.CharField(max_length=150)),
                ("latitude", models.FloatField()),
                ("longitude", models.FloatField()),
                ("accuracy_meters", models.FloatField(blank=True, null=True)),
                ("is_mock", models.BooleanField(default=False)),
                ("recorded_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "verbose_name": "Location Sample",
                "verbose_name_plural": "Location Samples",
                "ordering": ["-recorded_at"],
                "indexes": [
                    models.Index(
                        fields=["subject_id", "recorded_at"], name="trust_geo_subject_recorded_idx"
                    )
                ],
            },
        ),
        migrations.CreateModel(
            name="FraudAttempt",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                ("record_id", models.CharField(max_length=32, unique=True)),
                ("subject_id", models.CharField(max_length=150)),
                (
                    "attempt_type",
                    models.CharField(
                        choices=[
                            ("gps-spoof", "Gps Spoof"),
                            ("photo-spoof", "Photo Spoof"),
                            ("video-spoof", "Video Spoof"),
                            ("screen-spoof", "Screen Spoof"),
                            ("document-forgery", "Document Forgery"),
                            ("multi-device", "Multi Device"),
                            ("out-of-zone", "Out Of Zone"),
                            ("time-manipulation", "Time Manipulation"),
                            ("identity-mismatch", "Identity Mismatch"),
                            ("other", "Other"),
                        ],
                        max_length=32,
                    ),
                ),
                (
                    "severity",
                    models.CharField(
                        choices=[
                            ("low", "Low"),
                            ("medium", "Medium"),
                            ("high", "High"),
                            ("critical", "Critical"),
                        ],
                        max_length=16,
                    ),
                ),
                (
                    "action_taken",
                    models.CharField(
                        choices=[
                            ("logged", "Logged"),
                            ("warned", "Warned"),
                            ("escalated", "Escalated"),
                            ("blocked", "Blocked"),
                        ],
                        max_length=16,
                    ),
                ),
                ("blocked_until", models.DateTimeField(blank=True, null=True)),
                (
                    "evidence",
                    models.BinaryField(
                        blank=True,
                        help_text="Evidence blob encrypted with DATA_ENCRYPTION_KEY",
                        null=True,
                    ),
                ),
                ("details", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "verbose_name": "Fraud Attempt",
                "verbose_name_plural": "Fraud Attempts",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["subject_id", "created_at"], name="trust_fraud_subj_created_idx"
                    ),
                    models.Index(
                        fields=["action_taken", "blocked_until"],
                        name="trust_fraud_action_until_idx",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="LivenessLog",
            fields=[
                (
                    "id",
                    models.BigAutoField(
                        auto_created=True, primary_key=True, serialize=False, verbose_name="ID"
                    ),
                ),
                ("session_id", models.CharField(max_length=64, unique=True)),
                ("subject_id", models.CharField(max_length=150)),
                (
                    "check_type",
                    models.CharField(
                        choices=[
                            ("facial", "Facial"),
                            ("document", "Document"),
                            ("combined", "Combined"),
                        ],
                        max_length=16,
                    ),
                ),
                (
                    "result",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("passed", "Passed"),
                            ("failed", "Failed"),
                            ("inconclusive", "Inconclusive"),
                            ("timeout", "Timeout"),
                        ],
                        max_length=16,
                    ),
                ),
                ("confidence", models.FloatField(default=0.0)),
                ("checks_performed", models.JSONField(blank=True, default=list)),
                ("failure_reasons", models.JSONField(blank=True, default=list)),
                ("frames_analyzed", models.PositiveIntegerField(default=0)),
                ("duration_ms", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "verbose_name": "Liveness Log",
                "verbose_name_plural": "Liveness Logs",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["subject_id", "created_at"], name="trust_live_subj_created_idx"
                    ),
                    models.Index(
                        fields=["result", "created_at"], name="trust_live_result_created_idx"
                    ),
                ],
            },
        ),
    ]
