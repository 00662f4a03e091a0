"""Django project for the presence trust service."""

from .celery import app as celery_app

__all__ = ["celery_app"]
