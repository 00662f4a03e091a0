"""
Django settings for the presence trust service.

Values are read from environment variables so the same module serves local
development, CI and production (see ``production.py`` for the hardened
overrides).
"""

import json
import os
import sys
import warnings
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from django.core.exceptions import ImproperlyConfigured

import dj_database_url
from cryptography.fernet import Fernet

# `BASE_DIR` points to the repository root.
BASE_DIR = Path(__file__).resolve().parent.parent.parent
LOCAL_ENV_PATH = Path(os.environ.get("LOCAL_ENV_PATH", BASE_DIR / ".env"))
DEV_KEY_CACHE_PATH = Path(
    os.environ.get("DEV_ENCRYPTION_KEY_FILE", BASE_DIR / ".dev_encryption_keys.json")
)


# --- Environment helpers ---


def _get_bool_env(var_name: str, default: bool = False) -> bool:
    """Return a boolean from an environment variable."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default
    return raw_value.lower() in {"1", "true", "yes", "on"}


def _parse_int_env(var_name: str, default: int, *, minimum: int | None = None) -> int:
    """Return an integer from the environment, enforcing an optional minimum."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default

    try:
        value = int(raw_value)
    except ValueError as exc:
        raise ImproperlyConfigured(f"{var_name} must be an integer if provided.") from exc

    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{var_name} must be >= {minimum} if provided.")

    return value


def _get_float_env(
    var_name: str,
    default: float,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float:
    """Return a float from the environment with optional bound enforcement."""

    raw_value = os.environ.get(var_name)
    if raw_value is None:
        return default

    try:
        value = float(raw_value)
    except ValueError as exc:
        raise ImproperlyConfigured(f"{var_name} must be a float if provided.") from exc

    if minimum is not None and value < minimum:
        raise ImproperlyConfigured(f"{var_name} must be >= {minimum} if provided.")
    if maximum is not None and value > maximum:
        raise ImproperlyConfigured(f"{var_name} must be <= {maximum} if provided.")

    return value


# Detect if we're running tests
TESTING = "test" in sys.argv or (len(sys.argv) > 0 and "pytest" in sys.argv[0])

DEFAULT_SECRET_KEY = "a-secure-default-key-for-development-only"

# Automatically enable DEBUG mode when running tests.
DEBUG = _get_bool_env("DJANGO_DEBUG", default=TESTING)

SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", DEFAULT_SECRET_KEY)
if SECRET_KEY == DEFAULT_SECRET_KEY and not DEBUG:
    raise ImproperlyConfigured(
        "DJANGO_SECRET_KEY must be set to a secure value when DJANGO_DEBUG is not enabled."
    )


# --- Encryption keys ---


def _validate_fernet_key(key: str | bytes, setting_name: str) -> bytes:
    """Ensure the provided key material is a valid Fernet key."""

    key_bytes = key.encode() if isinstance(key, str) else key
    try:
        Fernet(key_bytes)
    except (ValueError, TypeError) as exc:
        raise ImproperlyConfigured(
            f"{setting_name} must be a valid 32-byte base64-encoded Fernet key."
        ) from exc
    return key_bytes


def _read_local_env_value(var_name: str) -> str | None:
    """Return a value from a local ``.env`` file if present."""

    if not LOCAL_ENV_PATH.exists():
        return None

    try:
        for raw_line in LOCAL_ENV_PATH.read_text().splitlines():
            line = raw_line.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            if key.strip() != var_name:
                continue
            return value.strip().strip("\"").strip("'")
    except OSError as exc:  # pragma: no cover - defensive programming
        warnings.warn(f"Unable to read {LOCAL_ENV_PATH}: {exc}")

    return None


def _read_configured_key(var_name: str, *, allow_dotenv: bool) -> str | None:
    value = os.environ.get(var_name)
    if value:
        return value
    if allow_dotenv:
        return _read_local_env_value(var_name)
    return None


def _load_cached_dev_key(var_name: str) -> bytes | None:
    """Load a previously generated development key from disk."""

    if not DEV_KEY_CACHE_PATH.exists():
        return None

    try:
        cache = json.loads(DEV_KEY_CACHE_PATH.read_text())
    except (OSError, json.JSONDecodeError) as exc:  # pragma: no cover - defensive programming
        warnings.warn(f"Ignoring invalid dev key cache file: {exc}")
        return None

    cached_value = cache.get(var_name)
    if not cached_value:
        return None
    try:
        return _validate_fernet_key(cached_value, var_name)
    except ImproperlyConfigured:
        warnings.warn(f"Ignoring invalid cached {var_name}; regenerating.")
        return None


def _persist_dev_key(var_name: str, key: bytes) -> None:
    """Persist generated development keys so encrypted rows survive restarts."""

    try:
        existing = (
            json.loads(DEV_KEY_CACHE_PATH.read_text()) if DEV_KEY_CACHE_PATH.exists() else {}
        )
    except (OSError, json.JSONDecodeError):  # pragma: no cover - defensive programming
        existing = {}

    existing[var_name] = key.decode()
    try:
        DEV_KEY_CACHE_PATH.write_text(json.dumps(existing, indent=2))
    except OSError as exc:  # pragma: no cover - defensive programming
        warnings.warn(f"Unable to persist dev encryption key cache: {exc}")


def _load_key(var_name: str) -> bytes:
    """Resolve a Fernet key, generating a cached one for DEBUG/TESTING sessions."""

    key = _read_configured_key(var_name, allow_dotenv=DEBUG or TESTING)
    if key:
        return _validate_fernet_key(key, var_name)
    if DEBUG or TESTING:
        cached_key = _load_cached_dev_key(var_name)
        if cached_key:
            return cached_key
        key_bytes = Fernet.generate_key()
        _persist_dev_key(var_name, key_bytes)
        return key_bytes
    raise ImproperlyConfigured(
        f"{var_name} environment variable must be set in production environments."
    )


# Encrypts fraud evidence blobs.
DATA_ENCRYPTION_KEY = _load_key("DATA_ENCRYPTION_KEY")
# Encrypts stored face descriptors.
FACE_DATA_ENCRYPTION_KEY = _load_key("FACE_DATA_ENCRYPTION_KEY")


# --- Celery ---

CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/0")
CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND", "redis://localhost:6379/1")
CELERY_TASK_ALWAYS_EAGER = _get_bool_env("CELERY_TASK_ALWAYS_EAGER", default=TESTING)

CELERY_BEAT_SCHEDULE = {
    "prune-liveness-logs": {
        "task": "trust.tasks.prune_liveness_logs",
        "schedule": _parse_int_env("CELERY_PRUNE_LIVENESS_SCHEDULE", 86400, minimum=60),
    },
    "prune-location-samples": {
        "task": "trust.tasks.prune_location_samples",
        "schedule": _parse_int_env("CELERY_PRUNE_LOCATION_SCHEDULE", 86400, minimum=60),
    },
}
CELERY_BEAT_ENABLED = _get_bool_env("CELERY_BEAT_ENABLED", default=True)


# --- Hosts & transport security ---

LOCALHOST_ALIASES: tuple[str, ...] = ("localhost", "127.0.0.1", "[::1]")


def _resolve_allowed_hosts(
    *,
    default_allowed_hosts: Sequence[str],
    require_explicit_hosts: bool,
) -> list[str]:
    """Return the allowed host list based on deployment defaults."""

    allowed_hosts_env = os.environ.get("DJANGO_ALLOWED_HOSTS")
    if allowed_hosts_env:
        return [host.strip() for host in allowed_hosts_env.split(",") if host.strip()]

    if require_explicit_hosts:
        raise ImproperlyConfigured(
            "DJANGO_ALLOWED_HOSTS must be provided (comma separated) when secure defaults are enforced."
        )

    return list(default_allowed_hosts)


def configure_environment(
    *,
    secure_defaults: bool,
    default_allowed_hosts: Sequence[str],
    require_allowed_hosts: bool,
) -> None:
    """Populate security-sensitive settings for the active environment."""

    global ALLOWED_HOSTS
    global SECURE_SSL_REDIRECT
    global SECURE_HSTS_SECONDS
    global SESSION_COOKIE_SECURE
    global CSRF_COOKIE_SECURE

    ALLOWED_HOSTS = _resolve_allowed_hosts(
        default_allowed_hosts=default_allowed_hosts,
        require_explicit_hosts=require_allowed_hosts,
    )
    SECURE_SSL_REDIRECT = _get_bool_env("DJANGO_SECURE_SSL_REDIRECT", default=secure_defaults)
    SECURE_HSTS_SECONDS = _parse_int_env(
        "DJANGO_SECURE_HSTS_SECONDS", default=3600 if secure_defaults else 0, minimum=0
    )
    SESSION_COOKIE_SECURE = _get_bool_env(
        "DJANGO_SESSION_COOKIE_SECURE", default=secure_defaults
    )
    CSRF_COOKIE_SECURE = _get_bool_env("DJANGO_CSRF_COOKIE_SECURE", default=secure_defaults)

    db_options = DATABASES["default"].setdefault("OPTIONS", {})
    if _get_bool_env("DATABASE_SSL_REQUIRE", default=secure_defaults):
        db_options["sslmode"] = os.environ.get("DATABASE_SSLMODE", "require")
    else:
        db_options.pop("sslmode", None)


# --- Application Configuration ---

INSTALLED_APPS = [
    "trust.apps.TrustConfig",
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "presence_guard.urls"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.debug",
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

WSGI_APPLICATION = "presence_guard.wsgi.application"


# --- Database Configuration ---

default_db_url = os.environ.get("DATABASE_URL", f"sqlite:///{(BASE_DIR / 'db.sqlite3').as_posix()}")
database_config = dj_database_url.parse(
    default_db_url, conn_max_age=_parse_int_env("DATABASE_CONN_MAX_AGE", 0, minimum=0)
)

DATABASES = {
    "default": database_config,
}


def build_postgres_database_config() -> dict[str, Any]:
    """Return a PostgreSQL configuration derived from discrete environment variables."""

    return {
        "ENGINE": "django.db.backends.postgresql",
        "NAME": os.environ.get("DB_NAME", "presence_guard"),
        "USER": os.environ.get("DB_USER", "presence_guard"),
        "PASSWORD": os.environ.get("DB_PASSWORD", "presence_guard"),
        "HOST": os.environ.get("DB_HOST", "localhost"),
        "PORT": os.environ.get("DB_PORT", "5432"),
        "CONN_MAX_AGE": _parse_int_env("DB_CONN_MAX_AGE", 600, minimum=0),
    }


configure_environment(
    secure_defaults=not DEBUG,
    default_allowed_hosts=LOCALHOST_ALIASES,
    require_allowed_hosts=not DEBUG,
)


# --- Cache Configuration ---
# Backend health checks are memoised here. LocMemCache is per-process; configure
# Redis or Memcached for multi-process deployments.

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "presence-guard",
    }
}


# --- Internationalization ---

LANGUAGE_CODE = "en-us"
TIME_ZONE = "UTC"
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = Path(os.environ.get("DJANGO_STATIC_ROOT", BASE_DIR / "staticfiles"))

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"


# --- Logging ---

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "standard"},
    },
    "loggers": {
        "trust": {
            "handlers": ["console"],
            "level": os.environ.get("TRUST_LOG_LEVEL", "INFO"),
            "propagate": True,
        },
    },
}


# --- Recognition backend ---

COMPREFACE_URL = os.environ.get("COMPREFACE_URL", "")
COMPREFACE_API_KEY = os.environ.get("COMPREFACE_API_KEY", "")
COMPREFACE_TIMEOUT_SECONDS = _get_float_env("COMPREFACE_TIMEOUT_SECONDS", 30.0, minimum=0.1)
COMPREFACE_HEALTH_TIMEOUT_SECONDS = _get_float_env(
    "COMPREFACE_HEALTH_TIMEOUT_SECONDS", 5.0, minimum=0.1
)
COMPREFACE_HEALTH_CACHE_SECONDS = _get_float_env(
    "COMPREFACE_HEALTH_CACHE_SECONDS", 10.0, minimum=0.0
)

# Similarity a primary-mode match must reach. Adjustable at runtime within [0.1, 0.9].
FACE_RECOGNITION_THRESHOLD = _get_float_env(
    "FACE_RECOGNITION_THRESHOLD", 0.85, minimum=0.1, maximum=0.9
)
FACE_FALLBACK_DISTANCE_THRESHOLD = _get_float_env(
    "FACE_FALLBACK_DISTANCE_THRESHOLD", 0.5, minimum=0.0
)
FACE_MIN_IMAGE_BYTES = _parse_int_env("FACE_MIN_IMAGE_BYTES", 1000, minimum=1)


# --- Liveness sessions ---

LIVENESS_SESSION_TIMEOUT_SECONDS = _parse_int_env(
    "LIVENESS_SESSION_TIMEOUT_SECONDS", 120, minimum=1
)
LIVENESS_MIN_FRAMES = _parse_int_env("LIVENESS_MIN_FRAMES", 5, minimum=1)
LIVENESS_MIN_CONFIDENCE = _get_float_env(
    "LIVENESS_MIN_CONFIDENCE", 0.8, minimum=0.0, maximum=1.0
)
LIVENESS_INCONCLUSIVE_CONFIDENCE = _get_float_env(
    "LIVENESS_INCONCLUSIVE_CONFIDENCE", 0.5, minimum=0.0, maximum=1.0
)
LIVENESS_TEXTURE_THRESHOLD = _get_float_env(
    "LIVENESS_TEXTURE_THRESHOLD", 0.5, minimum=0.0, maximum=1.0
)
LIVENESS_TEXTURE_VARIANCE_REFERENCE = _get_float_env(
    "LIVENESS_TEXTURE_VARIANCE_REFERENCE", 100.0, minimum=1.0
)
LIVENESS_REAPER_INTERVAL_SECONDS = _get_float_env(
    "LIVENESS_REAPER_INTERVAL_SECONDS", 5.0, minimum=0.1
)


# --- Fraud escalation policy ---

FRAUD_WINDOW_HOURS = _get_float_env("FRAUD_WINDOW_HOURS", 24.0, minimum=0.0)
FRAUD_BLOCK_HOURS = _get_float_env("FRAUD_BLOCK_HOURS", 24.0, minimum=0.0)
FRAUD_BLOCK_COUNT = _parse_int_env("FRAUD_BLOCK_COUNT", 5, minimum=1)
FRAUD_ESCALATE_COUNT = _parse_int_env("FRAUD_ESCALATE_COUNT", 3, minimum=1)
FRAUD_WARN_COUNT = _parse_int_env("FRAUD_WARN_COUNT", 2, minimum=1)

VERIFICATION_FAILURE_THRESHOLD = _parse_int_env("VERIFICATION_FAILURE_THRESHOLD", 3, minimum=1)
VERIFICATION_COUNTER_TTL_SECONDS = _parse_int_env(
    "VERIFICATION_COUNTER_TTL_SECONDS", 900, minimum=1
)


# --- Location plausibility ---

SPOOF_TELEPORT_KMH = _get_float_env("SPOOF_TELEPORT_KMH", 500.0, minimum=0.0)
SPOOF_IMPOSSIBLE_KMH = _get_float_env("SPOOF_IMPOSSIBLE_KMH", 150.0, minimum=0.0)
SPOOF_IMPOSSIBLE_WINDOW_SECONDS = _get_float_env(
    "SPOOF_IMPOSSIBLE_WINDOW_SECONDS", 60.0, minimum=0.0
)
SPOOF_LOW_ACCURACY_METERS = _get_float_env("SPOOF_LOW_ACCURACY_METERS", 100.0, minimum=0.0)
GEOFENCE_DEFAULT_RADIUS_METERS = _get_float_env(
    "GEOFENCE_DEFAULT_RADIUS_METERS", 100.0, minimum=0.0
)


# --- Retention ---

LIVENESS_LOG_RETENTION_DAYS = _parse_int_env("LIVENESS_LOG_RETENTION_DAYS", 90, minimum=0)
LOCATION_SAMPLE_RETENTION_DAYS = _parse_int_env("LOCATION_SAMPLE_RETENTION_DAYS", 30, minimum=0)

TRUST_ALERT_HISTORY = _parse_int_env("TRUST_ALERT_HISTORY", 50, minimum=1)
