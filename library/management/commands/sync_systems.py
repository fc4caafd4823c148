"""Management command to merge bundled system definitions into the library config."""

import asyncio

from django.core.management.base import BaseCommand

from library.store import LibraryStore


class Command(BaseCommand):
    help = "Sync system definitions from the bundled table to the library config"

    def add_arguments(self, parser):
        parser.add_argument(
            "--data-dir",
            type=str,
            help="Library folder (overrides LIBRARY_DATA_DIR setting)",
        )

    def handle(self, *args, **options):
        changed = asyncio.run(self._sync(options["data_dir"]))
        self.stdout.write(self.style.SUCCESS(f"Systems synced successfully ({changed} changed)"))

    async def _sync(self, data_dir):
        store = await LibraryStore.open(data_dir)
        return await store.sync_systems()
