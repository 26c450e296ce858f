# pyright: reportMissingImports=false, reportMissingModuleSource=false, reportUnknownMemberType=false
"""
Settings for the upload deduplication service.

Env-driven configuration:
- database via DATABASE_URL (SQLite file when unset)
- WhiteNoise static serving for the admin
- upload stores: local filesystem (default) or S3/MinIO-compatible remote storage
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, cast

import dj_database_url


def env_bool(key: str, default: bool = False) -> bool:
    value = os.getenv(key, str(default))
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(key: str, default: int) -> int:
    raw_value = os.getenv(key, str(default))
    try:
        parsed = int(raw_value)
    except (TypeError, ValueError):
        parsed = int(default)
    return parsed


def env_csv(key: str, default: str) -> tuple[str, ...]:
    raw_value = os.getenv(key, default)
    values = [item.strip().lower() for item in raw_value.split(",") if item.strip()]
    return tuple(values)


def strip_url_scheme(url: str) -> str:
    normalized = url.strip()
    lowered = normalized.lower()
    if lowered.startswith("http://"):
        return normalized[7:]
    if lowered.startswith("https://"):
        return normalized[8:]
    return normalized


BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = os.getenv("SECRET_KEY", "dev-placeholder-secret")
DEBUG = env_bool("DEBUG", True)
ALLOWED_HOSTS = [
    host.strip()
    for host in os.getenv("DJANGO_ALLOWED_HOSTS", "localhost,127.0.0.1").split(",")
    if host.strip()
]

INSTALLED_APPS = [
    "django.contrib.admin",
    "django.contrib.auth",
    "django.contrib.contenttypes",
    "django.contrib.sessions",
    "django.contrib.messages",
    "django.contrib.staticfiles",
    "uploads",
]

MIDDLEWARE = [
    "django.middleware.security.SecurityMiddleware",
    "whitenoise.middleware.WhiteNoiseMiddleware",
    "django.contrib.sessions.middleware.SessionMiddleware",
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
    "django.contrib.auth.middleware.AuthenticationMiddleware",
    "django.contrib.messages.middleware.MessageMiddleware",
    "django.middleware.clickjacking.XFrameOptionsMiddleware",
]

ROOT_URLCONF = "uploadhub.urls"
WSGI_APPLICATION = "uploadhub.wsgi.application"
ASGI_APPLICATION = "uploadhub.asgi.application"

TEMPLATES: list[dict[str, Any]] = [
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
        }
    }
]

default_database_url: str = os.getenv("DATABASE_URL") or f"sqlite:///{BASE_DIR / 'db.sqlite3'}"

DATABASES: dict[str, dict[str, Any]] = {
    "default": cast(
        dict[str, Any],
        dj_database_url.parse(default_database_url, conn_max_age=600, ssl_require=False),
    )
}

LANGUAGE_CODE = "en-us"
TIME_ZONE = os.getenv("TIME_ZONE", "UTC")
USE_I18N = True
USE_TZ = True

STATIC_URL = "/static/"
STATIC_ROOT = BASE_DIR / "staticfiles"
MEDIA_URL = "/media/"
MEDIA_ROOT = BASE_DIR / "mediafiles"

# Upload stores. `uploads_local` is served under /uploads/ so stored locations
# line up with the self-hosted URL pattern in uploads.storage_urls.
UPLOADHUB_LOCAL_UPLOAD_ROOT = Path(
    os.getenv("UPLOADHUB_LOCAL_UPLOAD_ROOT", str(BASE_DIR / "public" / "uploads"))
)

STORAGES: dict[str, dict[str, Any]] = {
    "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
    # Manifest storage is production-faithful but requires collectstatic output.
    # Use plain staticfiles storage in DEBUG/test runs to keep local iteration simple.
    "staticfiles": {
        "BACKEND": (
            "django.contrib.staticfiles.storage.StaticFilesStorage"
            if DEBUG
            else "whitenoise.storage.CompressedManifestStaticFilesStorage"
        )
    },
    "uploads_local": {
        "BACKEND": "django.core.files.storage.FileSystemStorage",
        "OPTIONS": {
            "location": str(UPLOADHUB_LOCAL_UPLOAD_ROOT),
            "base_url": "/uploads/",
            "allow_overwrite": True,
        },
    },
}

remote_bucket_name = os.getenv("AWS_STORAGE_BUCKET_NAME", os.getenv("MINIO_BUCKET", "uploadhub-local"))
remote_internal_endpoint = os.getenv(
    "AWS_S3_ENDPOINT_URL",
    os.getenv("MINIO_ENDPOINT", "http://minio:9000"),
)
remote_public_endpoint = os.getenv(
    "MEDIA_PUBLIC_ENDPOINT",
    f"http://localhost:{os.getenv('MINIO_PORT', '9000')}",
).rstrip("/")
default_custom_domain = f"{strip_url_scheme(remote_public_endpoint)}/{remote_bucket_name}"
custom_domain = os.getenv("AWS_S3_CUSTOM_DOMAIN", default_custom_domain).strip().strip("/")
if not custom_domain:
    custom_domain = default_custom_domain

default_url_protocol = "https:" if remote_public_endpoint.lower().startswith("https://") else "http:"

# Constructed lazily by django.core.files.storage.storages, so an unused remote
# configuration never opens a connection.
STORAGES["uploads_remote"] = {
    "BACKEND": "storages.backends.s3.S3Storage",
    "OPTIONS": {
        "access_key": os.getenv("AWS_ACCESS_KEY_ID", os.getenv("MINIO_ROOT_USER", "minioadmin")),
        "secret_key": os.getenv("AWS_SECRET_ACCESS_KEY", os.getenv("MINIO_ROOT_PASSWORD", "minioadmin")),
        "bucket_name": remote_bucket_name,
        "endpoint_url": remote_internal_endpoint,
        "region_name": os.getenv("AWS_S3_REGION_NAME", "us-east-1"),
        "default_acl": None,
        "querystring_auth": env_bool("AWS_QUERYSTRING_AUTH", False),
        "addressing_style": os.getenv("AWS_S3_ADDRESSING_STYLE", "path"),
        "signature_version": os.getenv("AWS_S3_SIGNATURE_VERSION", "s3v4"),
        "custom_domain": custom_domain,
        "url_protocol": os.getenv("AWS_S3_URL_PROTOCOL", default_url_protocol),
        "file_overwrite": True,
    },
}

AUTH_PASSWORD_VALIDATORS: list[dict[str, Any]] = [
    {"NAME": "django.contrib.auth.password_validation.UserAttributeSimilarityValidator"},
    {"NAME": "django.contrib.auth.password_validation.MinimumLengthValidator", "OPTIONS": {"min_length": 12}},
    {"NAME": "django.contrib.auth.password_validation.CommonPasswordValidator"},
    {"NAME": "django.contrib.auth.password_validation.NumericPasswordValidator"},
]

csrf_trusted_origins = os.getenv("CSRF_TRUSTED_ORIGINS", "")
CSRF_TRUSTED_ORIGINS: list[str] = [item.strip() for item in csrf_trusted_origins.split(",") if item.strip()]

if env_bool("USE_X_FORWARDED_PROTO", False):
    SECURE_PROXY_SSL_HEADER = ("HTTP_X_FORWARDED_PROTO", "https")

SECURE_SSL_REDIRECT = env_bool("SECURE_SSL_REDIRECT", False)
SESSION_COOKIE_SECURE = env_bool("SESSION_COOKIE_SECURE", False)
CSRF_COOKIE_SECURE = env_bool("CSRF_COOKIE_SECURE", False)

LOGGING: dict[str, Any] = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {"format": "%(asctime)s %(levelname)s %(name)s: %(message)s"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "standard"},
    },
    "loggers": {
        "uploads": {
            "handlers": ["console"],
            "level": os.getenv("UPLOADHUB_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            "propagate": False,
        },
    },
}

# Upload pipeline defaults (used by the uploads app, env-overridable).
UPLOADHUB_ENABLE_REMOTE_STORAGE = env_bool("UPLOADHUB_ENABLE_REMOTE_STORAGE", False)
UPLOADHUB_TENANT = os.getenv("UPLOADHUB_TENANT", "default").strip() or "default"
UPLOADHUB_BASE_URL = os.getenv("UPLOADHUB_BASE_URL", "http://localhost:8000").strip().rstrip("/")
UPLOADHUB_ASSET_HOST = os.getenv("UPLOADHUB_ASSET_HOST", "").strip().rstrip("/")
UPLOADHUB_MAX_IMAGE_WIDTH = max(1, env_int("UPLOADHUB_MAX_IMAGE_WIDTH", 690))
UPLOADHUB_MAX_IMAGE_HEIGHT = max(1, env_int("UPLOADHUB_MAX_IMAGE_HEIGHT", 500))
UPLOADHUB_ALLOWED_IMAGE_FORMATS = env_csv(
    "UPLOADHUB_ALLOWED_IMAGE_FORMATS",
    "png,jpeg,gif,tiff,bmp",
)
UPLOADHUB_ORPHAN_GRACE_MINUTES = max(0, env_int("UPLOADHUB_ORPHAN_GRACE_MINUTES", 10))

DEFAULT_AUTO_FIELD = "django.db.models.BigAutoField"
