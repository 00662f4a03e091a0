"""URL configuration for the presence_guard project."""

from django.contrib import admin
from django.urls import path

from trust import views

urlpatterns = [
    path("admin/", admin.site.urls),
    path("health/", views.system_health, name="trust-health"),
    path("metrics/", views.metrics, name="trust-metrics"),
]
