from __future__ import annotations

import shutil
import tempfile
from io import BytesIO
from pathlib import Path
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.files.storage import FileSystemStorage, InMemoryStorage
from django.test import SimpleTestCase, TestCase, override_settings

from .models import PostUpload, Upload, link_uploads_to_post, uploads_for_post
from .sizing import resize
from .storage import ImageInfo, LocalFileStore, RemoteObjectStore, StorageError
from .storage_urls import extract_upload_id, find_upload_ids, has_been_uploaded, upload_base_url

UserModel = get_user_model()

CONTENT_HASH = "0123456789abcdef0123456789abcdef01234567"


class ResizeTests(SimpleTestCase):
    def test_larger_side_is_clamped_and_aspect_ratio_kept(self) -> None:
        self.assertEqual(resize(4000, 2000, max_width=2000, max_height=2000), (2000, 1000))

    def test_tighter_limit_wins(self) -> None:
        self.assertEqual(resize(1380, 1000, max_width=690, max_height=500), (690, 500))
        self.assertEqual(resize(600, 1000, max_width=690, max_height=500), (300, 500))

    def test_images_inside_limits_keep_their_size(self) -> None:
        self.assertEqual(resize(320, 240, max_width=690, max_height=500), (320, 240))

    def test_scaled_sides_are_floored(self) -> None:
        self.assertEqual(resize(1000, 333, max_width=500, max_height=500), (500, 166))


class UploadedUrlTests(SimpleTestCase):
    def test_self_hosted_upload_url_yields_its_id(self) -> None:
        self.assertEqual(extract_upload_id("/uploads/acme/42/0123456789abcdef.png", tenant="acme"), 42)

    def test_every_supported_extension_is_recognized(self) -> None:
        for extension in ("png", "jpg", "jpeg", "gif", "tif", "tiff", "bmp"):
            with self.subTest(extension=extension):
                self.assertEqual(
                    extract_upload_id(f"/uploads/acme/7/0123456789abcdef.{extension}", tenant="acme"),
                    7,
                )

    def test_unsupported_extension_is_rejected(self) -> None:
        self.assertIsNone(extract_upload_id("/uploads/acme/42/0123456789abcdef.exe", tenant="acme"))
        self.assertIsNone(extract_upload_id("/uploads/acme/42/0123456789abcdef.pngx", tenant="acme"))

    def test_other_tenants_and_malformed_hashes_are_rejected(self) -> None:
        self.assertIsNone(extract_upload_id("/uploads/globex/42/0123456789abcdef.png", tenant="acme"))
        self.assertIsNone(extract_upload_id("/uploads/acme/42/0123456789ABCDEF.png", tenant="acme"))
        self.assertIsNone(extract_upload_id("/uploads/acme/42/0123456789abcde.png", tenant="acme"))
        self.assertIsNone(extract_upload_id("/uploads/acme/abc/0123456789abcdef.png", tenant="acme"))

    def test_tenant_is_matched_literally(self) -> None:
        self.assertIsNone(extract_upload_id("/uploads/aXme/42/0123456789abcdef.png", tenant="a.me"))
        self.assertEqual(extract_upload_id("/uploads/a.me/42/0123456789abcdef.png", tenant="a.me"), 42)

    def test_find_upload_ids_scans_rendered_content_in_order(self) -> None:
        content = (
            '<img src="/uploads/acme/9/0123456789abcdef.jpg"> '
            '<img src="https://cdn.example.com/uploads/acme/3/fedcba9876543210.gif"> '
            '<img src="/uploads/acme/9/0123456789abcdef.jpg">'
        )

        self.assertEqual(find_upload_ids(content, tenant="acme"), [9, 3])

    def test_relative_paths_count_as_uploaded(self) -> None:
        self.assertTrue(has_been_uploaded("/local/path.png", base_url="https://configured-base.example.com"))

    def test_protocol_relative_urls_do_not_count_as_uploaded(self) -> None:
        self.assertFalse(has_been_uploaded("//cdn.example.com/x.png", base_url="https://configured-base.example.com"))

    def test_urls_under_the_base_url_count_as_uploaded(self) -> None:
        base_url = "https://configured-base.example.com"
        self.assertTrue(has_been_uploaded("https://configured-base.example.com/x.png", base_url=base_url))
        self.assertFalse(has_been_uploaded("https://elsewhere.example.com/x.png", base_url=base_url))

    def test_empty_base_url_only_accepts_relative_paths(self) -> None:
        self.assertFalse(has_been_uploaded("https://elsewhere.example.com/x.png", base_url=""))
        self.assertFalse(has_been_uploaded("", base_url=""))

    @override_settings(UPLOADHUB_BASE_URL="https://configured-base.example.com", UPLOADHUB_ASSET_HOST="")
    def test_configured_base_url_is_used_by_default(self) -> None:
        self.assertEqual(upload_base_url(), "https://configured-base.example.com")
        self.assertTrue(has_been_uploaded("https://configured-base.example.com/x.png"))

    @override_settings(
        UPLOADHUB_BASE_URL="https://configured-base.example.com",
        UPLOADHUB_ASSET_HOST="https://assets.example.com",
    )
    def test_asset_host_is_preferred_over_site_base_url(self) -> None:
        self.assertEqual(upload_base_url(), "https://assets.example.com")
        self.assertTrue(has_been_uploaded("https://assets.example.com/x.png"))
        self.assertFalse(has_been_uploaded("https://configured-base.example.com/x.png"))


class UploadStoreTests(SimpleTestCase):
    def setUp(self) -> None:
        self.upload_root = Path(tempfile.mkdtemp(prefix="uploadhub-store-tests-"))
        self.addCleanup(lambda: shutil.rmtree(self.upload_root, ignore_errors=True))
        self.local_storage = FileSystemStorage(location=str(self.upload_root), base_url="/uploads/")

    def test_image_info_maps_pillow_formats_to_extensions(self) -> None:
        self.assertEqual(ImageInfo(width=1, height=1, format="jpeg").extension, "jpg")
        self.assertEqual(ImageInfo(width=1, height=1, format="png").extension, "png")
        self.assertEqual(ImageInfo(width=1, height=1, format="tiff").extension, "tiff")

    def test_local_store_writes_under_tenant_and_upload_id(self) -> None:
        store = LocalFileStore(storage=self.local_storage, tenant="acme")

        location = store.put(BytesIO(b"image-bytes"), CONTENT_HASH, ImageInfo(width=1, height=1, format="png"), 42)

        self.assertEqual(location, "/uploads/acme/42/0123456789abcdef.png")
        self.assertEqual((self.upload_root / "acme" / "42" / "0123456789abcdef.png").read_bytes(), b"image-bytes")
        self.assertEqual(extract_upload_id(location, tenant="acme"), 42)

    def test_remote_store_names_objects_by_upload_id_and_hash(self) -> None:
        storage = InMemoryStorage(base_url="https://bucket.uploads.test/")
        store = RemoteObjectStore(storage=storage)

        location = store.put(BytesIO(b"jpeg-bytes"), CONTENT_HASH, ImageInfo(width=1, height=1, format="jpeg"), 7)

        self.assertEqual(location, f"https://bucket.uploads.test/7{CONTENT_HASH}.jpg")
        with storage.open(f"7{CONTENT_HASH}.jpg", "rb") as stored:
            self.assertEqual(stored.read(), b"jpeg-bytes")

    def test_existing_object_is_not_written_again(self) -> None:
        storage = InMemoryStorage(base_url="https://bucket.uploads.test/")
        store = RemoteObjectStore(storage=storage)
        image_info = ImageInfo(width=1, height=1, format="png")
        first = store.put(BytesIO(b"png-bytes"), CONTENT_HASH, image_info, 5)

        with patch.object(storage, "save") as save_mock:
            second = store.put(BytesIO(b"png-bytes"), CONTENT_HASH, image_info, 5)

        save_mock.assert_not_called()
        self.assertEqual(second, first)

    def test_io_failures_surface_as_storage_errors(self) -> None:
        store = LocalFileStore(storage=self.local_storage, tenant="acme")

        with patch.object(self.local_storage, "save", side_effect=OSError("disk full")):
            with self.assertRaises(StorageError) as raised:
                store.put(BytesIO(b"image-bytes"), CONTENT_HASH, ImageInfo(width=1, height=1, format="png"), 42)

        self.assertIsInstance(raised.exception.__cause__, OSError)


class PostUploadLinkTests(TestCase):
    def setUp(self) -> None:
        self.owner = UserModel.objects.create_user(
            username="post-author",
            email="post-author@example.com",
            password="UploadPass!123456",
        )
        self.first = Upload.objects.create(
            owner=self.owner,
            original_filename="first.png",
            filesize=10,
            content_hash="d" * 40,
            url="/uploads/acme/1/dddddddddddddddd.png",
        )
        self.second = Upload.objects.create(
            owner=self.owner,
            original_filename="second.jpg",
            filesize=10,
            content_hash="e" * 40,
            url="/uploads/acme/2/eeeeeeeeeeeeeeee.jpg",
        )

    def _content_for(self, *uploads: Upload) -> str:
        return " ".join(
            f'<img src="/uploads/acme/{upload.pk}/{upload.content_hash[:16]}.png">' for upload in uploads
        )

    def test_referenced_uploads_are_linked_to_the_post(self) -> None:
        content = self._content_for(self.first, self.second) + ' <img src="/uploads/acme/99999/ffffffffffffffff.png">'

        links = link_uploads_to_post(post_key="post-17", content=content, tenant="acme")

        self.assertEqual([link.upload_id for link in links], [self.first.pk, self.second.pk])
        self.assertEqual(set(uploads_for_post("post-17")), {self.first, self.second})

    def test_linking_is_idempotent(self) -> None:
        content = self._content_for(self.first)

        link_uploads_to_post(post_key="post-18", content=content, tenant="acme")
        link_uploads_to_post(post_key="post-18", content=content, tenant="acme")

        self.assertEqual(PostUpload.objects.filter(post_key="post-18").count(), 1)

    def test_blank_post_key_or_foreign_tenant_links_nothing(self) -> None:
        content = self._content_for(self.first)

        self.assertEqual(link_uploads_to_post(post_key="  ", content=content, tenant="acme"), [])
        self.assertEqual(link_uploads_to_post(post_key="post-19", content=content, tenant="globex"), [])
        self.assertEqual(PostUpload.objects.count(), 0)
