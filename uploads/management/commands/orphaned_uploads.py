from __future__ import annotations

from datetime import timedelta
from typing import Any

from django.core.management.base import BaseCommand, CommandParser

from uploads.conf import orphan_grace_minutes
from uploads.models import Upload, orphaned_uploads


class Command(BaseCommand):
    help = "List (and optionally delete) uploads whose bytes never reached an upload store."

    def add_arguments(self, parser: CommandParser) -> None:
        parser.add_argument(
            "--older-than-minutes",
            type=int,
            default=None,
            help="Only consider rows created at least this many minutes ago (default: UPLOADHUB_ORPHAN_GRACE_MINUTES).",
        )
        parser.add_argument(
            "--delete",
            action="store_true",
            help="Delete the orphaned rows instead of only listing them.",
        )
        parser.add_argument(
            "--verbose",
            action="store_true",
            help="Print one line per orphaned upload.",
        )

    def _vprint(self, verbose_enabled: bool, message: str) -> None:
        if verbose_enabled:
            self.stdout.write(f"[uploads][verbose] {message}")

    def handle(self, *args: Any, **options: Any) -> None:
        raw_minutes = options.get("older_than_minutes")
        minutes = orphan_grace_minutes() if raw_minutes is None else max(0, int(raw_minutes))
        delete_enabled = bool(options.get("delete"))
        verbose_enabled = bool(options.get("verbose"))

        older_than = timedelta(minutes=minutes)
        rows = list(orphaned_uploads(older_than=older_than))
        for upload in rows:
            self._vprint(
                verbose_enabled,
                (
                    f"Orphaned upload #{upload.pk} owner_id={upload.owner_id} "
                    f"hash={upload.content_hash} created_at={upload.created_at.isoformat()}"
                ),
            )

        deleted_count = 0
        if delete_enabled and rows:
            # Rows repaired since the listing no longer match the orphan filter and survive.
            _, deleted_by_model = orphaned_uploads(older_than=older_than).filter(
                pk__in=[row.pk for row in rows]
            ).delete()
            deleted_count = deleted_by_model.get(Upload._meta.label, 0)

        self.stdout.write(
            self.style.SUCCESS(
                "Orphaned upload scan complete: "
                f"older_than_minutes={minutes}, "
                f"orphaned={len(rows)}, "
                f"deleted={deleted_count}"
            )
        )
