"""Upload stores: hand uploaded bytes to a Django storage and report the location."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import IO, Final

from botocore.exceptions import BotoCoreError, ClientError
from django.core.files import File
from django.core.files.storage import Storage, storages

from .conf import remote_storage_enabled, upload_tenant

logger = logging.getLogger(__name__)

REMOTE_STORAGE_ALIAS: Final[str] = "uploads_remote"
LOCAL_STORAGE_ALIAS: Final[str] = "uploads_local"

_FORMAT_EXTENSIONS: Final[dict[str, str]] = {"jpeg": "jpg"}
_STORAGE_FAILURES: Final[tuple[type[BaseException], ...]] = (OSError, BotoCoreError, ClientError)


class StorageError(Exception):
    """Raised when an upload store cannot persist the uploaded bytes."""


@dataclass(frozen=True)
class ImageInfo:
    width: int
    height: int
    format: str

    @property
    def extension(self) -> str:
        normalized_format = str(self.format or "").strip().lower()
        return _FORMAT_EXTENSIONS.get(normalized_format, normalized_format or "bin")


class UploadStore:
    """Persist an upload's bytes and return the location they are served from."""

    def __init__(self, *, storage: Storage) -> None:
        self.storage = storage

    def object_name(self, content_hash: str, image_info: ImageInfo, upload_id: int) -> str:
        raise NotImplementedError

    def put(self, stream: IO[bytes], content_hash: str, image_info: ImageInfo, upload_id: int) -> str:
        name = self.object_name(content_hash, image_info, upload_id)
        try:
            # Names embed the content hash, so an existing object already holds these bytes.
            if self.storage.exists(name):
                logger.info("Upload #%s already present at %s; skipping write", upload_id, name)
                saved_name = name
            else:
                saved_name = self.storage.save(name, File(stream, name=name))
            return str(self.storage.url(saved_name))
        except _STORAGE_FAILURES as exc:
            raise StorageError(f"Could not store upload #{upload_id} as {name}: {exc}") from exc


class RemoteObjectStore(UploadStore):
    def object_name(self, content_hash: str, image_info: ImageInfo, upload_id: int) -> str:
        return f"{int(upload_id)}{content_hash}.{image_info.extension}"


class LocalFileStore(UploadStore):
    def __init__(self, *, storage: Storage, tenant: str) -> None:
        super().__init__(storage=storage)
        self.tenant = str(tenant or "").strip() or "default"

    def object_name(self, content_hash: str, image_info: ImageInfo, upload_id: int) -> str:
        return f"{self.tenant}/{int(upload_id)}/{content_hash[:16]}.{image_info.extension}"


def build_upload_store() -> UploadStore:
    if remote_storage_enabled():
        return RemoteObjectStore(storage=storages[REMOTE_STORAGE_ALIAS])
    return LocalFileStore(storage=storages[LOCAL_STORAGE_ALIAS], tenant=upload_tenant())
