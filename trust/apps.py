"""App configuration for the presence trust pipeline."""

from django.apps import AppConfig


class TrustConfig(AppConfig):
    """Register the trust app so Django discovers its models, admin and tasks."""

    name = "trust"
    default_auto_field = "django.db.models.BigAutoField"
    verbose_name = "Presence Trust"
