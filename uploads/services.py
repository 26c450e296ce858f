from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
from collections.abc import Callable
from datetime import timedelta
from pathlib import Path
from typing import IO, Final

from PIL import Image, UnidentifiedImageError
from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone

from .conf import allowed_image_formats, orphan_grace_minutes
from .models import Upload
from .sizing import resize_for_display
from .storage import ImageInfo, StorageError, UploadStore, build_upload_store

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE: Final[int] = 64 * 1024
SPOOL_MAX_MEMORY_BYTES: Final[int] = 5 * 1024 * 1024

ResizePolicy = Callable[[int, int], tuple[int, int]]

# Pillow names multi-picture JPEG files "mpo"; the first frame is a plain JPEG.
_FORMAT_ALIASES: Final[dict[str, str]] = {"mpo": "jpeg"}


def _is_seekable(stream: IO[bytes]) -> bool:
    seekable = getattr(stream, "seekable", None)
    if callable(seekable):
        try:
            return bool(seekable())
        except (OSError, ValueError):
            return False
    return callable(getattr(stream, "seek", None)) and callable(getattr(stream, "tell", None))


def _rewind(stream: IO[bytes]) -> None:
    if _is_seekable(stream):
        stream.seek(0)


def _stream_size(stream: IO[bytes]) -> int:
    try:
        stream.seek(0, os.SEEK_END)
        size = int(stream.tell())
        stream.seek(0)
    except (OSError, ValueError) as exc:
        raise ValidationError({"filesize": "Could not determine the uploaded file size."}) from exc
    return size


def content_hash_for_stream(stream: IO[bytes]) -> str:
    """SHA-1 hex digest of the whole stream; leaves the stream at position 0."""

    stream.seek(0)
    hasher = hashlib.sha1()
    try:
        for chunk in iter(lambda: stream.read(HASH_CHUNK_SIZE), b""):
            hasher.update(chunk)
        return hasher.hexdigest()
    finally:
        stream.seek(0)


def read_image_info(stream: IO[bytes]) -> ImageInfo:
    stream.seek(0)
    try:
        with Image.open(stream) as image:
            image_format = str(image.format or "").strip().lower()
            image_format = _FORMAT_ALIASES.get(image_format, image_format)
            width, height = image.size
            image.verify()
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError, SyntaxError) as exc:
        raise ValidationError({"file": "Upload a valid image file."}) from exc
    finally:
        stream.seek(0)

    if image_format not in allowed_image_formats():
        raise ValidationError({"file": f"Unsupported image format: {image_format or 'unknown'}."})

    return ImageInfo(width=int(width), height=int(height), format=image_format)


class UploadService:
    """
    Content-addressed upload pipeline.

    Identical bytes collapse onto one `Upload` row no matter who sends them or
    under which filename. New content is decoded, recorded, handed to the
    configured upload store and finally stamped with the stored location.
    """

    def __init__(
        self,
        *,
        store: UploadStore,
        resize: ResizePolicy = resize_for_display,
        model: type[Upload] = Upload,
    ) -> None:
        self.store = store
        self.resize = resize
        self.model = model

    def submit(self, owner_id: int, file_stream: IO[bytes], original_filename: str) -> Upload:
        if _is_seekable(file_stream):
            try:
                return self._submit(owner_id, file_stream, original_filename)
            finally:
                _rewind(file_stream)

        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY_BYTES) as buffered:
            shutil.copyfileobj(file_stream, buffered)
            return self._submit(owner_id, buffered, original_filename)

    def _submit(self, owner_id: int, stream: IO[bytes], original_filename: str) -> Upload:
        filesize = _stream_size(stream)
        if filesize <= 0:
            raise ValidationError({"filesize": "Uploaded file cannot be empty."})

        content_hash = content_hash_for_stream(stream)
        existing = self._find_existing(content_hash)
        if existing is not None:
            if existing.is_stored:
                logger.info("Deduplicated upload %s onto #%s", content_hash, existing.pk)
                return existing
            if self._in_flight(existing):
                logger.info("Upload #%s is still being stored by another submission", existing.pk)
                return existing
            logger.warning("Upload #%s has no stored location; storing bytes again", existing.pk)
            return self._store(existing, stream, content_hash, read_image_info(stream))

        image_info = read_image_info(stream)
        width, height = self.resize(image_info.width, image_info.height)

        upload = self.model(
            owner_id=owner_id,
            original_filename=original_filename,
            filesize=filesize,
            content_hash=content_hash,
            width=width,
            height=height,
            url="",
        )
        upload.full_clean(validate_unique=False, validate_constraints=False)
        try:
            with transaction.atomic():
                upload.save()
        except IntegrityError:
            winner = self._find_existing(content_hash)
            if winner is None:
                raise
            logger.info("Concurrent upload of %s already created #%s", content_hash, winner.pk)
            if winner.is_stored or self._in_flight(winner):
                return winner
            upload = winner
        else:
            logger.info("Created upload #%s for %s (%s bytes)", upload.pk, content_hash, filesize)

        return self._store(upload, stream, content_hash, image_info)

    def _find_existing(self, content_hash: str) -> Upload | None:
        return self.model.objects.filter(content_hash=content_hash).first()

    def _in_flight(self, upload: Upload) -> bool:
        # Unstored rows younger than the orphan grace period belong to a submission that has not finished yet.
        cutoff = timezone.now() - timedelta(minutes=orphan_grace_minutes())
        return upload.created_at > cutoff

    def _store(self, upload: Upload, stream: IO[bytes], content_hash: str, image_info: ImageInfo) -> Upload:
        stream.seek(0)
        try:
            location = self.store.put(stream, content_hash, image_info, int(upload.pk))
        except StorageError:
            logger.exception(
                "Upload #%s (%s) was recorded but its bytes were not stored; url left empty",
                upload.pk,
                content_hash,
            )
            raise

        upload.url = location
        upload.save(update_fields=["url", "updated_at"])
        return upload


def build_upload_service() -> UploadService:
    return UploadService(store=build_upload_store())


def submit_upload(
    *,
    owner_id: int,
    uploaded_file: IO[bytes],
    original_filename: str | None = None,
) -> Upload:
    filename = original_filename
    if filename is None:
        filename = Path(str(getattr(uploaded_file, "name", "") or "")).name
    return build_upload_service().submit(owner_id, uploaded_file, filename)
