from __future__ import annotations

import hashlib
import io
import shutil
import tempfile
from io import BytesIO, StringIO
from pathlib import Path
from typing import Any
from unittest.mock import patch

from PIL import Image
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.files.storage import storages
from django.core.files.uploadedfile import SimpleUploadedFile
from django.core.management import call_command
from django.test import TestCase, override_settings

from .management.commands.orphaned_uploads import Command as OrphanedUploadsCommand
from .models import Upload, orphaned_uploads
from .services import UploadService, build_upload_service, content_hash_for_stream, submit_upload
from .storage import ImageInfo, LocalFileStore, RemoteObjectStore, StorageError, UploadStore

UserModel = get_user_model()

REMOTE_BASE_URL = "https://bucket.uploads.test/"


def _build_image_bytes(
    size: tuple[int, int] = (2, 1),
    color: tuple[int, int, int] = (32, 160, 141),
    image_format: str = "PNG",
) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color=color).save(buffer, format=image_format)
    return buffer.getvalue()


SAMPLE_PNG_BYTES = _build_image_bytes()


def upload_storages_for(local_root: Path) -> dict[str, dict[str, Any]]:
    return {
        "default": {"BACKEND": "django.core.files.storage.FileSystemStorage"},
        "staticfiles": {"BACKEND": "django.contrib.staticfiles.storage.StaticFilesStorage"},
        "uploads_local": {
            "BACKEND": "django.core.files.storage.FileSystemStorage",
            "OPTIONS": {"location": str(local_root), "base_url": "/uploads/", "allow_overwrite": True},
        },
        "uploads_remote": {
            "BACKEND": "django.core.files.storage.InMemoryStorage",
            "OPTIONS": {"base_url": REMOTE_BASE_URL},
        },
    }


class _TrickleStream(io.RawIOBase):
    """Non-seekable stream that hands out a few bytes per read."""

    def __init__(self, payload: bytes, step: int = 3) -> None:
        super().__init__()
        self._payload = payload
        self._offset = 0
        self._step = step

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def readinto(self, buffer: Any) -> int:
        chunk = self._payload[self._offset:self._offset + min(self._step, len(buffer))]
        buffer[: len(chunk)] = chunk
        self._offset += len(chunk)
        return len(chunk)


class _UnmeasurableStream(BytesIO):
    """Claims to be seekable but cannot report its length."""

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if whence == io.SEEK_END:
            raise OSError("stream length unavailable")
        return super().seek(offset, whence)


class _FailingStore(UploadStore):
    def object_name(self, content_hash: str, image_info: ImageInfo, upload_id: int) -> str:
        return f"failing/{upload_id}.{image_info.extension}"

    def put(self, stream: Any, content_hash: str, image_info: ImageInfo, upload_id: int) -> str:
        raise StorageError("bucket unavailable")


class UploadServiceTests(TestCase):
    def setUp(self) -> None:
        self.upload_root = Path(tempfile.mkdtemp(prefix="uploadhub-tests-"))
        self.override = override_settings(
            STORAGES=upload_storages_for(self.upload_root),
            UPLOADHUB_ENABLE_REMOTE_STORAGE=False,
            UPLOADHUB_TENANT="acme",
            UPLOADHUB_MAX_IMAGE_WIDTH=690,
            UPLOADHUB_MAX_IMAGE_HEIGHT=500,
        )
        self.override.enable()
        self.addCleanup(self.override.disable)
        self.addCleanup(lambda: shutil.rmtree(self.upload_root, ignore_errors=True))

        self.owner = UserModel.objects.create_user(
            username="upload-owner",
            email="upload-owner@example.com",
            password="UploadPass!123456",
        )
        self.other = UserModel.objects.create_user(
            username="upload-other",
            email="upload-other@example.com",
            password="UploadPass!123456",
        )
        self.service = build_upload_service()

    def test_submit_creates_upload_and_stores_bytes_locally(self) -> None:
        payload = _build_image_bytes(size=(40, 20))
        expected_hash = hashlib.sha1(payload).hexdigest()

        upload = self.service.submit(int(self.owner.pk), BytesIO(payload), "cover.png")

        self.assertIsInstance(self.service.store, LocalFileStore)
        self.assertEqual(upload.owner_id, self.owner.pk)
        self.assertEqual(upload.original_filename, "cover.png")
        self.assertEqual(upload.filesize, len(payload))
        self.assertEqual(upload.content_hash, expected_hash)
        self.assertEqual((upload.width, upload.height), (40, 20))
        self.assertEqual(upload.url, f"/uploads/acme/{upload.pk}/{expected_hash[:16]}.png")

        stored_path = self.upload_root / "acme" / str(upload.pk) / f"{expected_hash[:16]}.png"
        self.assertEqual(stored_path.read_bytes(), payload)

        upload.refresh_from_db()
        self.assertEqual(upload.url, f"/uploads/acme/{upload.pk}/{expected_hash[:16]}.png")

    def test_identical_bytes_return_existing_upload_without_second_write(self) -> None:
        first = self.service.submit(int(self.owner.pk), BytesIO(SAMPLE_PNG_BYTES), "first.png")

        with patch.object(self.service.store, "put", wraps=self.service.store.put) as put_mock:
            second = self.service.submit(int(self.other.pk), BytesIO(SAMPLE_PNG_BYTES), "renamed.png")

        put_mock.assert_not_called()
        self.assertEqual(second.pk, first.pk)
        self.assertEqual(second.owner_id, self.owner.pk)
        self.assertEqual(second.original_filename, "first.png")
        self.assertEqual(Upload.objects.count(), 1)

    def test_content_hash_does_not_depend_on_filename_or_chunking(self) -> None:
        expected_hash = hashlib.sha1(SAMPLE_PNG_BYTES).hexdigest()
        self.assertEqual(content_hash_for_stream(BytesIO(SAMPLE_PNG_BYTES)), expected_hash)

        trickled = self.service.submit(int(self.owner.pk), _TrickleStream(SAMPLE_PNG_BYTES), "trickle.png")
        whole = self.service.submit(int(self.owner.pk), BytesIO(SAMPLE_PNG_BYTES), "whole.png")

        self.assertEqual(trickled.content_hash, expected_hash)
        self.assertEqual(trickled.filesize, len(SAMPLE_PNG_BYTES))
        self.assertEqual(whole.pk, trickled.pk)

    def test_input_stream_is_rewound_and_intact_after_submit(self) -> None:
        stream = BytesIO(SAMPLE_PNG_BYTES)

        self.service.submit(int(self.owner.pk), stream, "rewind.png")

        self.assertEqual(stream.tell(), 0)
        self.assertEqual(stream.read(), SAMPLE_PNG_BYTES)

    def test_submit_upload_accepts_django_uploaded_file(self) -> None:
        uploaded = SimpleUploadedFile(name="form-field.png", content=SAMPLE_PNG_BYTES, content_type="image/png")

        upload = submit_upload(owner_id=int(self.owner.pk), uploaded_file=uploaded)

        self.assertEqual(upload.original_filename, "form-field.png")
        self.assertTrue(upload.url.startswith("/uploads/acme/"))
        uploaded.seek(0)
        self.assertEqual(uploaded.read(), SAMPLE_PNG_BYTES)

    def test_invalid_image_is_rejected_before_any_record_or_write(self) -> None:
        with patch.object(self.service.store, "put") as put_mock:
            with self.assertRaises(ValidationError) as raised:
                self.service.submit(int(self.owner.pk), BytesIO(b"definitely not an image"), "notes.png")

        self.assertIn("file", raised.exception.message_dict)
        put_mock.assert_not_called()
        self.assertEqual(Upload.objects.count(), 0)

    def test_empty_stream_is_rejected(self) -> None:
        with self.assertRaises(ValidationError) as raised:
            self.service.submit(int(self.owner.pk), BytesIO(b""), "empty.png")

        self.assertIn("filesize", raised.exception.message_dict)
        self.assertEqual(Upload.objects.count(), 0)

    def test_stream_of_unknown_size_is_rejected(self) -> None:
        with patch.object(self.service.store, "put") as put_mock:
            with self.assertRaises(ValidationError) as raised:
                self.service.submit(int(self.owner.pk), _UnmeasurableStream(SAMPLE_PNG_BYTES), "pipe.png")

        self.assertIn("filesize", raised.exception.message_dict)
        put_mock.assert_not_called()
        self.assertEqual(Upload.objects.count(), 0)

    def test_multi_picture_jpeg_is_accepted_as_jpeg(self) -> None:
        buffer = BytesIO()
        Image.new("RGB", (8, 6), color=(200, 40, 40)).save(
            buffer,
            format="MPO",
            save_all=True,
            append_images=[Image.new("RGB", (8, 6), color=(40, 40, 200))],
        )
        payload = buffer.getvalue()

        upload = self.service.submit(int(self.owner.pk), BytesIO(payload), "camera.jpg")

        self.assertEqual((upload.width, upload.height), (8, 6))
        self.assertEqual(upload.url, f"/uploads/acme/{upload.pk}/{upload.content_hash[:16]}.jpg")

    @override_settings(UPLOADHUB_ALLOWED_IMAGE_FORMATS=("png",))
    def test_image_format_outside_allow_list_is_rejected(self) -> None:
        gif_bytes = _build_image_bytes(size=(4, 4), image_format="GIF")

        with self.assertRaises(ValidationError):
            self.service.submit(int(self.owner.pk), BytesIO(gif_bytes), "anim.gif")

        self.assertEqual(Upload.objects.count(), 0)

    def test_blank_filename_is_rejected_when_creating(self) -> None:
        with self.assertRaises(ValidationError) as raised:
            self.service.submit(int(self.owner.pk), BytesIO(SAMPLE_PNG_BYTES), "")

        self.assertIn("original_filename", raised.exception.message_dict)
        self.assertEqual(Upload.objects.count(), 0)

    def test_oversized_image_gets_clamped_display_dimensions(self) -> None:
        payload = _build_image_bytes(size=(1380, 400))

        upload = self.service.submit(int(self.owner.pk), BytesIO(payload), "panorama.png")

        self.assertEqual((upload.width, upload.height), (690, 200))

    def test_custom_resize_policy_is_used(self) -> None:
        service = UploadService(store=self.service.store, resize=lambda width, height: (width * 10, height * 10))

        upload = service.submit(int(self.owner.pk), BytesIO(SAMPLE_PNG_BYTES), "tiny.png")

        self.assertEqual((upload.width, upload.height), (20, 10))

    def test_storage_failure_keeps_record_without_location(self) -> None:
        storage = storages["uploads_local"]
        service = UploadService(store=_FailingStore(storage=storage))

        with self.assertLogs("uploads.services", level="ERROR"):
            with self.assertRaises(StorageError):
                service.submit(int(self.owner.pk), BytesIO(SAMPLE_PNG_BYTES), "lost.png")

        upload = Upload.objects.get(content_hash=hashlib.sha1(SAMPLE_PNG_BYTES).hexdigest())
        self.assertEqual(upload.url, "")
        self.assertFalse(upload.is_stored)
        self.assertEqual(list(orphaned_uploads()), [upload])

    @override_settings(UPLOADHUB_ORPHAN_GRACE_MINUTES=0)
    def test_resubmitting_orphaned_content_repairs_its_location(self) -> None:
        failing_service = UploadService(store=_FailingStore(storage=storages["uploads_local"]))
        with self.assertLogs("uploads.services", level="ERROR"):
            with self.assertRaises(StorageError):
                failing_service.submit(int(self.owner.pk), BytesIO(SAMPLE_PNG_BYTES), "lost.png")
        orphan = Upload.objects.get()

        repaired = self.service.submit(int(self.other.pk), BytesIO(SAMPLE_PNG_BYTES), "retry.png")

        self.assertEqual(repaired.pk, orphan.pk)
        self.assertEqual(repaired.original_filename, "lost.png")
        self.assertTrue(repaired.url.startswith(f"/uploads/acme/{orphan.pk}/"))
        self.assertEqual(orphaned_uploads().count(), 0)

    def test_row_still_being_stored_is_returned_without_second_write(self) -> None:
        in_flight = Upload.objects.create(
            owner=self.other,
            original_filename="in-flight.png",
            filesize=len(SAMPLE_PNG_BYTES),
            content_hash=hashlib.sha1(SAMPLE_PNG_BYTES).hexdigest(),
            width=2,
            height=1,
            url="",
        )

        with patch.object(self.service.store, "put") as put_mock:
            result = self.service.submit(int(self.owner.pk), BytesIO(SAMPLE_PNG_BYTES), "second.png")

        put_mock.assert_not_called()
        self.assertEqual(result.pk, in_flight.pk)
        self.assertEqual(Upload.objects.count(), 1)

    def test_losing_a_creation_race_returns_the_winning_row(self) -> None:
        winner = Upload.objects.create(
            owner=self.other,
            original_filename="winner.png",
            filesize=len(SAMPLE_PNG_BYTES),
            content_hash=hashlib.sha1(SAMPLE_PNG_BYTES).hexdigest(),
            width=2,
            height=1,
            url="/uploads/acme/999/0123456789abcdef.png",
        )

        with patch.object(UploadService, "_find_existing", side_effect=[None, winner]):
            with patch.object(self.service.store, "put") as put_mock:
                result = self.service.submit(int(self.owner.pk), BytesIO(SAMPLE_PNG_BYTES), "loser.png")

        put_mock.assert_not_called()
        self.assertEqual(result.pk, winner.pk)
        self.assertEqual(Upload.objects.count(), 1)

    def test_losing_a_race_to_a_row_still_being_stored_leaves_the_write_to_the_winner(self) -> None:
        winner = Upload.objects.create(
            owner=self.other,
            original_filename="winner.png",
            filesize=len(SAMPLE_PNG_BYTES),
            content_hash=hashlib.sha1(SAMPLE_PNG_BYTES).hexdigest(),
            width=2,
            height=1,
            url="",
        )

        with patch.object(UploadService, "_find_existing", side_effect=[None, winner]):
            with patch.object(self.service.store, "put") as put_mock:
                result = self.service.submit(int(self.owner.pk), BytesIO(SAMPLE_PNG_BYTES), "loser.png")

        put_mock.assert_not_called()
        self.assertEqual(result.pk, winner.pk)
        self.assertEqual(Upload.objects.count(), 1)

    @override_settings(UPLOADHUB_ORPHAN_GRACE_MINUTES=0)
    def test_losing_a_race_to_an_unstored_row_finishes_its_storage(self) -> None:
        winner = Upload.objects.create(
            owner=self.other,
            original_filename="winner.png",
            filesize=len(SAMPLE_PNG_BYTES),
            content_hash=hashlib.sha1(SAMPLE_PNG_BYTES).hexdigest(),
            width=2,
            height=1,
            url="",
        )

        with patch.object(UploadService, "_find_existing", side_effect=[None, winner]):
            result = self.service.submit(int(self.owner.pk), BytesIO(SAMPLE_PNG_BYTES), "loser.png")

        self.assertEqual(result.pk, winner.pk)
        self.assertTrue(result.is_stored)
        winner.refresh_from_db()
        self.assertEqual(winner.url, result.url)

    def test_remote_storage_flag_selects_remote_store(self) -> None:
        with override_settings(UPLOADHUB_ENABLE_REMOTE_STORAGE=True):
            service = build_upload_service()

        upload = service.submit(int(self.owner.pk), BytesIO(SAMPLE_PNG_BYTES), "remote.png")

        expected_name = f"{upload.pk}{upload.content_hash}.png"
        self.assertIsInstance(service.store, RemoteObjectStore)
        self.assertEqual(upload.url, f"{REMOTE_BASE_URL}{expected_name}")
        self.assertTrue(storages["uploads_remote"].exists(expected_name))

    def test_store_choice_is_fixed_when_the_service_is_built(self) -> None:
        with override_settings(UPLOADHUB_ENABLE_REMOTE_STORAGE=True):
            upload = self.service.submit(int(self.owner.pk), BytesIO(SAMPLE_PNG_BYTES), "local.png")

        self.assertTrue(upload.url.startswith("/uploads/acme/"))


class UploadCommandTests(TestCase):
    def setUp(self) -> None:
        self.upload_root = Path(tempfile.mkdtemp(prefix="uploadhub-command-tests-"))
        self.override = override_settings(
            STORAGES=upload_storages_for(self.upload_root),
            UPLOADHUB_ENABLE_REMOTE_STORAGE=False,
            UPLOADHUB_TENANT="default",
        )
        self.override.enable()
        self.addCleanup(self.override.disable)
        self.addCleanup(lambda: shutil.rmtree(self.upload_root, ignore_errors=True))

    def test_bootstrap_uploads_creates_members_and_reuses_duplicate_bytes(self) -> None:
        stdout = StringIO()
        call_command("bootstrap_uploads", "--create-missing-members", "--verbose", stdout=stdout)
        output = stdout.getvalue()

        self.assertTrue(UserModel.objects.filter(username="mei").exists())
        self.assertTrue(UserModel.objects.filter(username="arun").exists())
        self.assertEqual(Upload.objects.count(), 2)
        self.assertIn("[uploads][verbose]", output)
        self.assertIn("created_members=2", output)
        self.assertIn("created=2", output)
        self.assertIn("reused=1", output)

    def test_bootstrap_uploads_skips_missing_members_by_default(self) -> None:
        stdout = StringIO()
        call_command("bootstrap_uploads", stdout=stdout)

        self.assertEqual(Upload.objects.count(), 0)
        self.assertIn("skipped=3", stdout.getvalue())

    def test_orphaned_uploads_lists_and_deletes_rows_without_location(self) -> None:
        owner = UserModel.objects.create_user(
            username="orphan-owner",
            email="orphan-owner@example.com",
            password="UploadPass!123456",
        )
        orphan = Upload.objects.create(
            owner=owner,
            original_filename="orphan.png",
            filesize=10,
            content_hash="a" * 40,
            url="",
        )
        Upload.objects.create(
            owner=owner,
            original_filename="stored.png",
            filesize=10,
            content_hash="b" * 40,
            url="/uploads/default/2/bbbbbbbbbbbbbbbb.png",
        )

        listing = StringIO()
        call_command("orphaned_uploads", "--older-than-minutes", "0", "--verbose", stdout=listing)
        self.assertIn(f"Orphaned upload #{orphan.pk}", listing.getvalue())
        self.assertIn("orphaned=1", listing.getvalue())
        self.assertIn("deleted=0", listing.getvalue())
        self.assertEqual(Upload.objects.count(), 2)

        purge = StringIO()
        call_command("orphaned_uploads", "--older-than-minutes", "0", "--delete", stdout=purge)
        self.assertIn("deleted=1", purge.getvalue())
        self.assertFalse(Upload.objects.filter(pk=orphan.pk).exists())
        self.assertEqual(Upload.objects.count(), 1)

    def test_orphaned_uploads_keeps_rows_repaired_during_the_scan(self) -> None:
        owner = UserModel.objects.create_user(
            username="repair-owner",
            email="repair-owner@example.com",
            password="UploadPass!123456",
        )
        orphan = Upload.objects.create(
            owner=owner,
            original_filename="late.png",
            filesize=10,
            content_hash="f" * 40,
            url="",
        )

        def repair_while_listing(verbose_enabled: bool, message: str) -> None:
            Upload.objects.filter(pk=orphan.pk).update(url="/uploads/default/1/ffffffffffffffff.png")

        stdout = StringIO()
        with patch.object(OrphanedUploadsCommand, "_vprint", side_effect=repair_while_listing):
            call_command("orphaned_uploads", "--older-than-minutes", "0", "--delete", stdout=stdout)

        self.assertIn("orphaned=1", stdout.getvalue())
        self.assertIn("deleted=0", stdout.getvalue())
        self.assertTrue(Upload.objects.filter(pk=orphan.pk).exists())

    def test_orphaned_uploads_respects_grace_period(self) -> None:
        owner = UserModel.objects.create_user(
            username="fresh-owner",
            email="fresh-owner@example.com",
            password="UploadPass!123456",
        )
        Upload.objects.create(
            owner=owner,
            original_filename="in-flight.png",
            filesize=10,
            content_hash="c" * 40,
            url="",
        )

        stdout = StringIO()
        call_command("orphaned_uploads", "--older-than-minutes", "30", "--delete", stdout=stdout)

        self.assertIn("orphaned=0", stdout.getvalue())
        self.assertEqual(Upload.objects.count(), 1)

