from __future__ import annotations

import re
from typing import Final

from .conf import asset_host, site_base_url

UPLOADABLE_IMAGE_EXTENSIONS: Final[tuple[str, ...]] = ("png", "jpg", "jpeg", "gif", "tif", "tiff", "bmp")

_RELATIVE_URL_RE: Final[re.Pattern[str]] = re.compile(r"^/[^/]")


def uploaded_url_pattern(tenant: str) -> re.Pattern[str]:
    """
    Pattern for locations inside this site's own upload namespace.

    `/uploads/<tenant>/<upload id>/<16 hex chars>.<image extension>`; the id is
    exposed as the `upload_id` group. The match is unanchored so it can be used
    to scan rendered content.
    """

    extensions = "|".join(UPLOADABLE_IMAGE_EXTENSIONS)
    return re.compile(
        rf"/uploads/{re.escape(str(tenant))}/(?P<upload_id>\d+)/[0-9a-f]{{16}}\.(?:{extensions})\b"
    )


def extract_upload_id(url: object, *, tenant: str) -> int | None:
    match = uploaded_url_pattern(tenant).search(str(url or ""))
    if match is None:
        return None
    return int(match.group("upload_id"))


def find_upload_ids(text: object, *, tenant: str) -> list[int]:
    upload_ids: list[int] = []
    seen: set[int] = set()
    for match in uploaded_url_pattern(tenant).finditer(str(text or "")):
        upload_id = int(match.group("upload_id"))
        if upload_id in seen:
            continue
        seen.add(upload_id)
        upload_ids.append(upload_id)
    return upload_ids


def upload_base_url() -> str:
    configured_asset_host = asset_host()
    if configured_asset_host:
        return configured_asset_host
    return site_base_url()


def has_been_uploaded(url: object, *, base_url: str | None = None) -> bool:
    candidate = str(url or "")
    if _RELATIVE_URL_RE.match(candidate):
        return True

    effective_base_url = upload_base_url() if base_url is None else str(base_url).strip()
    if not effective_base_url:
        return False
    return candidate.startswith(effective_base_url)
