"""Smoke tests for the production settings module."""

from __future__ import annotations

import importlib
import sys

import pytest
from cryptography.fernet import Fernet
from django.core.exceptions import ImproperlyConfigured

from presence_guard.settings.sentry import build_before_send


def _reload_production_settings():
    """Force a reload of the production settings module for isolation."""

    for module in [
        "presence_guard.settings.production",
        "presence_guard.settings.base",
        "presence_guard.settings",
    ]:
        sys.modules.pop(module, None)
    return importlib.import_module("presence_guard.settings.production")


@pytest.fixture
def production_env(monkeypatch, tmp_path):
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("SENTRY_DSN", raising=False)
    monkeypatch.setenv("DJANGO_SECRET_KEY", "ci-secret")
    monkeypatch.setenv("DATA_ENCRYPTION_KEY", Fernet.generate_key().decode())
    monkeypatch.setenv("FACE_DATA_ENCRYPTION_KEY", Fernet.generate_key().decode())
    monkeypatch.setenv("DEV_ENCRYPTION_KEY_FILE", str(tmp_path / "dev_keys.json"))
    monkeypatch.setenv("DJANGO_ALLOWED_HOSTS", "guard.example.com, api.guard.example.com")
    monkeypatch.setenv("COMPREFACE_URL", "https://compreface.example.com")
    monkeypatch.setenv("COMPREFACE_API_KEY", "ci-api-key")
    monkeypatch.delenv("COMPREFACE_REQUIRED", raising=False)
    yield monkeypatch
    monkeypatch.undo()
    for module in ["presence_guard.settings.production", "presence_guard.settings.base"]:
        sys.modules.pop(module, None)


def test_production_database_configuration(production_env):
    production_env.setenv("DB_NAME", "ci_db")
    production_env.setenv("DB_USER", "ci_user")
    production_env.setenv("DB_PASSWORD", "ci_password")
    production_env.setenv("DB_HOST", "postgres")
    production_env.setenv("DB_PORT", "6543")
    production_env.setenv("DB_CONN_MAX_AGE", "120")

    settings = _reload_production_settings()

    database = settings.DATABASES["default"]
    assert settings.DEBUG is False
    assert database["ENGINE"] == "django.db.backends.postgresql"
    assert database["NAME"] == "ci_db"
    assert database["PORT"] == "6543"
    assert database["CONN_MAX_AGE"] == 120
    assert database["OPTIONS"]["sslmode"] == "require"
    assert settings.ALLOWED_HOSTS == ["guard.example.com", "api.guard.example.com"]
    assert settings.SECURE_SSL_REDIRECT is True
    assert settings.SESSION_COOKIE_SECURE is True


def test_production_requires_allowed_hosts(production_env):
    production_env.delenv("DJANGO_ALLOWED_HOSTS")

    with pytest.raises(ImproperlyConfigured):
        _reload_production_settings()


def test_production_requires_explicit_encryption_keys(production_env):
    production_env.delenv("FACE_DATA_ENCRYPTION_KEY")

    with pytest.raises(ImproperlyConfigured, match="FACE_DATA_ENCRYPTION_KEY"):
        _reload_production_settings()


def test_production_rejects_shared_encryption_key(production_env):
    key = Fernet.generate_key().decode()
    production_env.setenv("DATA_ENCRYPTION_KEY", key)
    production_env.setenv("FACE_DATA_ENCRYPTION_KEY", key)

    with pytest.raises(ImproperlyConfigured, match="must differ"):
        _reload_production_settings()


def test_production_requires_compreface_api_key(production_env):
    production_env.delenv("COMPREFACE_API_KEY")

    with pytest.raises(ImproperlyConfigured, match="COMPREFACE_API_KEY"):
        _reload_production_settings()


def test_production_warns_without_recognition_backend(production_env):
    production_env.delenv("COMPREFACE_URL")

    with pytest.warns(RuntimeWarning, match="fallback mode"):
        settings = _reload_production_settings()

    assert settings.COMPREFACE_REQUIRED is False


def test_production_can_require_recognition_backend(production_env):
    production_env.delenv("COMPREFACE_URL")
    production_env.setenv("COMPREFACE_REQUIRED", "true")

    with pytest.raises(ImproperlyConfigured, match="COMPREFACE_URL"):
        _reload_production_settings()


def test_sentry_before_send_scrubs_sensitive_fields():
    before_send = build_before_send(send_default_pii=False)
    event = {
        "request": {"headers": {"Authorization": "Bearer x", "X-Api-Key": "k", "Accept": "*/*"}},
        "extra": {"evidence": "raw", "subject_id": "guard-1"},
        "user": {"id": 1},
    }

    scrubbed = before_send(event, None)

    assert scrubbed["request"]["headers"] == {
        "Authorization": "[Filtered]",
        "X-Api-Key": "[Filtered]",
        "Accept": "*/*",
    }
    assert scrubbed["extra"] == {"evidence": "[Filtered]", "subject_id": "guard-1"}
    assert "user" not in scrubbed
