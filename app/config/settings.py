import os
from datetime import timedelta
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name: str, default: str = "0") -> bool:
    return os.environ.get(name, default).strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str) -> list[str]:
    return [item.strip() for item in os.environ.get(name, "").split(",") if item.strip()]


SECRET_KEY = os.environ.get("DJANGO_SECRET_KEY", "dev-secret-change-me")
DEBUG = _env_bool("DJANGO_DEBUG", "1")
ALLOWED_HOSTS = _env_list("DJANGO_ALLOWED_HOSTS") or ["*"]

INSTALLED_APPS = [
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "rest_framework",
    "facilities",
    "devices",
    "access",
    "attendance",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
]

ROOT_URLCONF = "config.urls"
WSGI_APPLICATION = "config.wsgi.application"

TEMPLATES = [
    {
        "BACKEND": "django.template.backends.django.DjangoTemplates",
        "DIRS": [],
        "APP_DIRS": True,
        "OPTIONS": {
            "context_processors": [
                "django.template.context_processors.request",
                "django.contrib.auth.context_processors.auth",
                "django.contrib.messages.context_processors.messages",
            ],
        },
    },
]

DATABASES = {
    "default": {
        "ENGINE": "django.db.backends.sqlite3",
        "NAME": os.environ.get("ACCESS_DB_PATH", str(BASE_DIR / "db.sqlite3")),
    }
}

CACHES = {
    "default": {
        "BACKEND": "django.core.cache.backends.locmem.LocMemCache",
        "LOCATION": "access-control",
    }
}

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.environ.get("ACCESS_TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "static/"

REST_FRAMEWORK = {
    "DEFAULT_AUTHENTICATION_CLASSES": [
        "rest_framework_simplejwt.authentication.JWTAuthentication",
        "rest_framework.authentication.SessionAuthentication",
    ],
    "DEFAULT_PERMISSION_CLASSES": [
        "rest_framework.permissions.IsAuthenticated",
    ],
    "DEFAULT_PAGINATION_CLASS": "rest_framework.pagination.PageNumberPagination",
    "PAGE_SIZE": 50,
}

SIMPLE_JWT = {
    "ACCESS_TOKEN_LIFETIME": timedelta(minutes=int(os.environ.get("JWT_ACCESS_MINUTES", "30"))),
    "REFRESH_TOKEN_LIFETIME": timedelta(days=int(os.environ.get("JWT_REFRESH_DAYS", "7"))),
}

# Device-facing surface
DEVICE_API_TOKEN = os.environ.get("DEVICE_API_TOKEN", "")
DEVICE_ALLOWED_IPS = _env_list("DEVICE_ALLOWED_IPS")
DEVICE_HEARTBEAT_INTERVAL_SECONDS = int(os.environ.get("DEVICE_HEARTBEAT_INTERVAL_SECONDS", "30"))
DEVICE_ONLINE_THRESHOLD_MULTIPLIER = int(os.environ.get("DEVICE_ONLINE_THRESHOLD_MULTIPLIER", "3"))
DEVICE_ACTUATION_TIMEOUT_SECONDS = float(os.environ.get("DEVICE_ACTUATION_TIMEOUT_SECONDS", "5"))
DEVICE_GRANT_DURATION_MS = int(os.environ.get("DEVICE_GRANT_DURATION_MS", "5000"))
DEVICE_HEALTHY_MIN_FREE_HEAP = 10000

# Per-action throttling. fail_open only for telemetry.
ACCESS_RATE_LIMITS = {
    "qr": {"max_attempts": 10, "window_seconds": 60, "block_seconds": 300},
    "pin": {"max_attempts": 5, "window_seconds": 300, "block_seconds": 900},
    "biometric": {"max_attempts": 5, "window_seconds": 300, "block_seconds": 900},
    "emergency": {"max_attempts": 3, "window_seconds": 900, "block_seconds": 3600},
    "admin-override": {"max_attempts": 10, "window_seconds": 300, "block_seconds": 900},
    "order-creation": {"max_attempts": 10, "window_seconds": 3600, "block_seconds": 3600},
    "payment-verification": {"max_attempts": 20, "window_seconds": 3600, "block_seconds": 3600},
    "key-fetch": {"max_attempts": 30, "window_seconds": 900, "block_seconds": 900},
    "rate-limit-reset": {"max_attempts": 5, "window_seconds": 3600, "block_seconds": 3600},
    "log-attempt": {"max_attempts": 30, "window_seconds": 300, "block_seconds": 300},
    "heartbeat": {"max_attempts": 120, "window_seconds": 60, "block_seconds": 60, "fail_open": True},
}

MEMBERSHIP_STATUS_CACHE_TTL_SECONDS = int(os.environ.get("MEMBERSHIP_STATUS_CACHE_TTL_SECONDS", "60"))
ATTENDANCE_AVERAGE_WINDOW_WEEKS = 4

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "verbose": {
            "format": "%(asctime)s %(levelname)s %(name)s %(message)s",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "verbose",
        },
    },
    "root": {
        "handlers": ["console"],
        "level": os.environ.get("ACCESS_LOG_LEVEL", "INFO"),
    },
    "loggers": {
        "access.audit": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "django.db.backends": {
            "level": "WARNING",
        },
    },
}
