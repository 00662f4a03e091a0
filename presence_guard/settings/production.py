"""Production settings for the presence trust service."""

from __future__ import annotations

import os
import warnings

from django.core.exceptions import ImproperlyConfigured

from .base import *  # noqa: F401,F403
from .base import (
    COMPREFACE_API_KEY,
    COMPREFACE_URL,
    DATA_ENCRYPTION_KEY,
    DATABASES,
    FACE_DATA_ENCRYPTION_KEY,
    _get_bool_env,
    build_postgres_database_config,
    configure_environment,
)
from .sentry import initialize_sentry

DEBUG = False


if DATABASES["default"].get("ENGINE") == "django.db.backends.sqlite3":
    DATABASES["default"] = build_postgres_database_config()

if DATABASES["default"].get("ENGINE") == "django.db.backends.sqlite3":
    raise ImproperlyConfigured(
        "Production deployments must configure a PostgreSQL database via DATABASE_URL or DB_* environment variables."
    )


# Cached development keys are never acceptable for descriptors or fraud evidence.
for _key_name in ("DATA_ENCRYPTION_KEY", "FACE_DATA_ENCRYPTION_KEY"):
    if not os.environ.get(_key_name):
        raise ImproperlyConfigured(f"{_key_name} must be set explicitly in production.")

if DATA_ENCRYPTION_KEY == FACE_DATA_ENCRYPTION_KEY:
    raise ImproperlyConfigured(
        "FACE_DATA_ENCRYPTION_KEY must differ from DATA_ENCRYPTION_KEY."
    )


COMPREFACE_REQUIRED = _get_bool_env("COMPREFACE_REQUIRED", False)

if COMPREFACE_URL and not COMPREFACE_API_KEY:
    raise ImproperlyConfigured("COMPREFACE_API_KEY is required when COMPREFACE_URL is set.")

if not COMPREFACE_URL:
    if COMPREFACE_REQUIRED:
        raise ImproperlyConfigured("COMPREFACE_URL must be set when COMPREFACE_REQUIRED is enabled.")
    warnings.warn(
        "COMPREFACE_URL is not set; face verification will only run in fallback mode.",
        RuntimeWarning,
        stacklevel=1,
    )
elif not COMPREFACE_URL.startswith("https://"):
    warnings.warn(
        "COMPREFACE_URL does not use HTTPS; face images will travel unencrypted.",
        RuntimeWarning,
        stacklevel=1,
    )


configure_environment(
    secure_defaults=True,
    default_allowed_hosts=(),
    require_allowed_hosts=True,
)


initialize_sentry()
