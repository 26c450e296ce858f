from typing import TYPE_CHECKING, Any

from django.contrib import admin
from django.db.models import QuerySet
from django.http import HttpRequest

from .models import PostUpload, Upload

if TYPE_CHECKING:
    _BaseUploadAdmin = admin.ModelAdmin[Upload]
    _BasePostUploadAdmin = admin.ModelAdmin[PostUpload]
else:
    _BaseUploadAdmin = admin.ModelAdmin
    _BasePostUploadAdmin = admin.ModelAdmin


class StoredLocationFilter(admin.SimpleListFilter):
    title = "stored location"
    parameter_name = "location"

    def lookups(self, request: HttpRequest, model_admin: Any) -> list[tuple[str, str]]:
        return [("stored", "Stored"), ("orphaned", "Orphaned (no location)")]

    def queryset(self, request: HttpRequest, queryset: QuerySet[Any]) -> QuerySet[Any] | None:
        if self.value() == "stored":
            return queryset.exclude(url="")
        if self.value() == "orphaned":
            return queryset.filter(url="")
        return queryset


@admin.register(Upload)
class UploadAdmin(_BaseUploadAdmin):
    list_display = (
        "id",
        "owner",
        "original_filename",
        "filesize",
        "width",
        "height",
        "url",
        "created_at",
    )
    list_filter = (StoredLocationFilter, "created_at")
    search_fields = ("owner__username", "original_filename", "content_hash", "url")
    readonly_fields = ("content_hash", "filesize", "width", "height", "created_at", "updated_at")
    ordering = ("-created_at", "-id")


@admin.register(PostUpload)
class PostUploadAdmin(_BasePostUploadAdmin):
    list_display = ("id", "upload", "post_key", "created_at")
    search_fields = ("post_key", "upload__original_filename", "upload__content_hash")
    readonly_fields = ("created_at",)
    ordering = ("-created_at", "-id")
