from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Any, cast

from PIL import Image
from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management.base import BaseCommand, CommandParser

from uploads.services import build_upload_service
from uploads.storage import StorageError

UserModel = get_user_model()


def _build_sample_png_bytes(size: tuple[int, int], color: tuple[int, int, int]) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", size, color=color).save(buffer, format="PNG")
    return buffer.getvalue()


@dataclass(frozen=True)
class UploadSeed:
    owner_username: str
    filename: str
    size: tuple[int, int]
    color: tuple[int, int, int]


# The last seed repeats the first one's bytes under another owner and filename.
UPLOAD_SEEDS: tuple[UploadSeed, ...] = (
    UploadSeed(owner_username="mei", filename="kyoto-cover.png", size=(1200, 800), color=(32, 160, 141)),
    UploadSeed(owner_username="arun", filename="patagonia-map.png", size=(320, 240), color=(201, 94, 40)),
    UploadSeed(owner_username="arun", filename="kyoto-cover-copy.png", size=(1200, 800), color=(32, 160, 141)),
)


class Command(BaseCommand):
    help = "Create demo uploads through the dedup pipeline and report which rows were reused."

    def add_arguments(self, parser: CommandParser) -> None:
        parser.add_argument(
            "--create-missing-members",
            action="store_true",
            help="Create missing demo members before upload seeding.",
        )
        parser.add_argument(
            "--demo-password",
            default="UploadDemoPass!123",
            help="Password used when missing members are created.",
        )
        parser.add_argument(
            "--verbose",
            action="store_true",
            help="Print detailed progress for each upload seed row.",
        )

    def _vprint(self, verbose_enabled: bool, message: str) -> None:
        if verbose_enabled:
            self.stdout.write(f"[uploads][verbose] {message}")

    def _resolve_member(
        self,
        *,
        username: str,
        create_missing_members: bool,
        demo_password: str,
        verbose_enabled: bool,
    ) -> tuple[Any | None, bool]:
        member = cast(Any | None, UserModel.objects.filter(username__iexact=username).first())
        if member is not None:
            return member, False

        if not create_missing_members:
            self._vprint(
                verbose_enabled,
                (
                    f"Skipping @{username}; member does not exist and "
                    "--create-missing-members is disabled."
                ),
            )
            return None, False

        member = UserModel.objects.create_user(
            username=username,
            email=f"{username}@uploadhub.local",
            password=demo_password,
        )
        self._vprint(verbose_enabled, f"Created missing member @{username}")
        return member, True

    def handle(self, *args: Any, **options: Any) -> None:
        create_missing_members = bool(options.get("create_missing_members"))
        demo_password = str(options.get("demo_password") or "UploadDemoPass!123")
        verbose_enabled = bool(options.get("verbose"))

        service = build_upload_service()
        self._vprint(verbose_enabled, f"Using upload store {type(service.store).__name__}")

        seen_ids: set[int] = set()
        created_members = 0
        created_count = 0
        reused_count = 0
        skipped_count = 0

        for seed in UPLOAD_SEEDS:
            member, member_created = self._resolve_member(
                username=seed.owner_username,
                create_missing_members=create_missing_members,
                demo_password=demo_password,
                verbose_enabled=verbose_enabled,
            )
            if member_created:
                created_members += 1
            if member is None:
                skipped_count += 1
                continue

            payload = BytesIO(_build_sample_png_bytes(seed.size, seed.color))
            try:
                upload = service.submit(int(member.pk), payload, seed.filename)
            except (ValidationError, StorageError) as exc:
                skipped_count += 1
                self._vprint(verbose_enabled, f"Seed {seed.filename} failed: {exc}")
                continue

            if upload.pk in seen_ids or upload.original_filename != seed.filename:
                reused_count += 1
                outcome = "reused"
            else:
                created_count += 1
                outcome = "created"
            seen_ids.add(int(upload.pk))

            self._vprint(
                verbose_enabled,
                (
                    f"{outcome} upload #{upload.pk} for @{seed.owner_username} "
                    f"({seed.filename}, {upload.width}x{upload.height}) -> {upload.url}"
                ),
            )

        self.stdout.write(
            self.style.SUCCESS(
                "Upload bootstrap complete: "
                f"created_members={created_members}, "
                f"created={created_count}, "
                f"reused={reused_count}, "
                f"skipped={skipped_count}"
            )
        )
