from __future__ import annotations

from typing import Final, cast

from django.conf import settings

DEFAULT_TENANT: Final[str] = "default"
DEFAULT_BASE_URL: Final[str] = "http://localhost:8000"
DEFAULT_MAX_IMAGE_WIDTH: Final[int] = 690
DEFAULT_MAX_IMAGE_HEIGHT: Final[int] = 500
DEFAULT_ALLOWED_IMAGE_FORMATS: Final[tuple[str, ...]] = ("png", "jpeg", "gif", "tiff", "bmp")
DEFAULT_ORPHAN_GRACE_MINUTES: Final[int] = 10


def _read_str_setting(setting_name: str, default_value: str) -> str:
    raw_value: object = getattr(settings, setting_name, default_value)
    return str(raw_value or "").strip()


def _read_positive_int_setting(setting_name: str, default_value: int, *, minimum: int = 1) -> int:
    raw_value = getattr(settings, setting_name, default_value)
    try:
        parsed = int(raw_value)
    except (TypeError, ValueError):
        parsed = int(default_value)
    return max(minimum, parsed)


def remote_storage_enabled() -> bool:
    return bool(getattr(settings, "UPLOADHUB_ENABLE_REMOTE_STORAGE", False))


def upload_tenant() -> str:
    return _read_str_setting("UPLOADHUB_TENANT", DEFAULT_TENANT) or DEFAULT_TENANT


def site_base_url() -> str:
    return _read_str_setting("UPLOADHUB_BASE_URL", DEFAULT_BASE_URL).rstrip("/")


def asset_host() -> str:
    return _read_str_setting("UPLOADHUB_ASSET_HOST", "").rstrip("/")


def max_image_width() -> int:
    return _read_positive_int_setting("UPLOADHUB_MAX_IMAGE_WIDTH", DEFAULT_MAX_IMAGE_WIDTH)


def max_image_height() -> int:
    return _read_positive_int_setting("UPLOADHUB_MAX_IMAGE_HEIGHT", DEFAULT_MAX_IMAGE_HEIGHT)


def orphan_grace_minutes() -> int:
    return _read_positive_int_setting(
        "UPLOADHUB_ORPHAN_GRACE_MINUTES",
        DEFAULT_ORPHAN_GRACE_MINUTES,
        minimum=0,
    )


def allowed_image_formats() -> set[str]:
    raw_value: object = getattr(settings, "UPLOADHUB_ALLOWED_IMAGE_FORMATS", DEFAULT_ALLOWED_IMAGE_FORMATS)
    candidates: list[str]

    if isinstance(raw_value, str):
        candidates = raw_value.split(",")
    elif isinstance(raw_value, (list, tuple, set)):
        typed_values = cast(list[object] | tuple[object, ...] | set[object], raw_value)
        candidates = [("" if value is None else str(value)) for value in typed_values]
    else:
        candidates = list(DEFAULT_ALLOWED_IMAGE_FORMATS)

    normalized = {
        item.strip().lower()
        for item in candidates
        if item.strip()
    }
    if normalized:
        return normalized

    return set(DEFAULT_ALLOWED_IMAGE_FORMATS)
