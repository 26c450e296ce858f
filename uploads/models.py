from __future__ import annotations

from datetime import timedelta
from typing import Final

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import QuerySet
from django.utils import timezone

from .storage_urls import find_upload_ids

CONTENT_HASH_LENGTH: Final[int] = 40


class Upload(models.Model):
    """
    Content-addressed uploaded image.

    `content_hash` is the SHA-1 of the stored bytes and acts as the dedup key;
    identical bytes always resolve to the first row created for them. `url` is
    empty only between row creation and the upload store reporting a location.
    """

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name="uploads",
    )
    original_filename = models.CharField(max_length=255)
    filesize = models.PositiveBigIntegerField()
    content_hash = models.CharField(max_length=CONTENT_HASH_LENGTH, unique=True)
    width = models.PositiveIntegerField(blank=True, null=True)
    height = models.PositiveIntegerField(blank=True, null=True)
    url = models.CharField(max_length=512, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ("-created_at", "-id")
        indexes = [
            models.Index(fields=("owner", "created_at"), name="upload_owner_created_idx"),
            models.Index(fields=("url",), name="upload_url_idx"),
        ]

    def __str__(self) -> str:
        return f"Upload #{self.pk or 'new'} ({self.original_filename})"

    @property
    def is_stored(self) -> bool:
        return bool(str(self.url or "").strip())

    def clean(self) -> None:
        super().clean()

        if int(self.filesize or 0) <= 0:
            raise ValidationError({"filesize": "Uploaded file cannot be empty."})

        normalized_hash = str(self.content_hash or "").strip().lower()
        if len(normalized_hash) != CONTENT_HASH_LENGTH:
            raise ValidationError({"content_hash": "Content hash must be a 40 character hex digest."})
        self.content_hash = normalized_hash


class PostUpload(models.Model):
    """
    Link between an upload and a post that references it.

    Posts live outside this app, so they are addressed by an opaque `post_key`.
    """

    upload = models.ForeignKey(
        Upload,
        on_delete=models.CASCADE,
        related_name="post_links",
    )
    post_key = models.CharField(max_length=191)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("-created_at", "-id")
        constraints = [
            models.UniqueConstraint(fields=("upload", "post_key"), name="post_upload_unique_link"),
        ]
        indexes = [
            models.Index(fields=("post_key", "created_at"), name="post_upload_post_created_idx"),
        ]

    def __str__(self) -> str:
        return f"PostUpload #{self.pk or 'new'} -> {self.post_key}"


def find_upload_by_content_hash(content_hash: str) -> Upload | None:
    normalized_hash = str(content_hash or "").strip().lower()
    if not normalized_hash:
        return None
    return Upload.objects.filter(content_hash=normalized_hash).first()


def orphaned_uploads(*, older_than: timedelta | None = None) -> QuerySet[Upload]:
    """Rows whose bytes never reached an upload store."""

    queryset = Upload.objects.filter(url="")
    if older_than is not None:
        queryset = queryset.filter(created_at__lt=timezone.now() - older_than)
    return queryset.order_by("created_at", "id")


def link_uploads_to_post(*, post_key: object, content: object, tenant: str) -> list[PostUpload]:
    normalized_key = str(post_key or "").strip()
    if not normalized_key:
        return []

    upload_ids = find_upload_ids(content, tenant=tenant)
    if not upload_ids:
        return []

    uploads_by_id = {upload.pk: upload for upload in Upload.objects.filter(pk__in=upload_ids)}
    links: list[PostUpload] = []
    for upload_id in upload_ids:
        upload = uploads_by_id.get(upload_id)
        if upload is None:
            continue
        link, _created = PostUpload.objects.get_or_create(upload=upload, post_key=normalized_key)
        links.append(link)
    return links


def uploads_for_post(post_key: object) -> QuerySet[Upload]:
    normalized_key = str(post_key or "").strip()
    return Upload.objects.filter(post_links__post_key=normalized_key).distinct()
