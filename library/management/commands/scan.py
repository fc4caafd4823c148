"""Management command to scan directories for ROMs."""

import asyncio

from django.core.management.base import BaseCommand, CommandError

from library.scanner import scan_directory, scan_system_folders
from library.store import LibraryStore


class Command(BaseCommand):
    help = "Scan a directory for ROM files and add them to the library"

    def add_arguments(self, parser):
        parser.add_argument(
            "path",
            nargs="?",
            type=str,
            help="Path to the ROM directory to scan (defaults to romsBasePath)",
        )
        parser.add_argument(
            "--system",
            type=str,
            help="Treat every ROM found as this system id (e.g., nes, gba)",
        )
        parser.add_argument(
            "--system-folders",
            action="store_true",
            help="Scan the ROM folder configured for each system instead",
        )
        parser.add_argument(
            "--data-dir",
            type=str,
            help="Library folder (overrides LIBRARY_DATA_DIR setting)",
        )
        parser.add_argument(
            "--batch-size",
            type=int,
            help="Number of files hashed concurrently (overrides SCAN_BATCH_SIZE)",
        )

    def handle(self, *args, **options):
        summary = {}
        verbosity = options["verbosity"]

        def on_progress(event):
            if event["event"] == "complete":
                # One complete event per scanned folder
                for key in ("added", "cache_hits", "not_found", "errors"):
                    summary[key] = summary.get(key, 0) + event[key]
            elif verbosity >= 2 and event["record"] is not None:
                marker = "+" if event["is_new"] else "="
                self.stdout.write(
                    f"  [{event['processed']}/{event['total']}] {marker} "
                    f"{event['record'].title} ({event['record'].system_id})"
                )

        records = asyncio.run(self._scan(options, on_progress))

        self.stdout.write("")
        self.stdout.write(self.style.SUCCESS(f"Added: {summary.get('added', 0)}"))
        self.stdout.write(f"Unchanged (cache hits): {summary.get('cache_hits', 0)}")
        self.stdout.write(f"No ROM in archive: {summary.get('not_found', 0)}")
        if summary.get("errors"):
            self.stdout.write(self.style.WARNING(f"Errors: {summary['errors']}"))
        self.stdout.write(f"Library entries touched: {len(records)}")
        self.stdout.write("")
        self.stdout.write("Done!")

    async def _scan(self, options, on_progress):
        store = await LibraryStore.open(options["data_dir"])

        if options["system_folders"]:
            self.stdout.write("Scanning system folders")
            records = await scan_system_folders(store, progress_callback=on_progress)
            return records

        path = options["path"] or store.config.roms_base_path
        if not path:
            raise CommandError("No path given and romsBasePath is not set.")
        if options["system"] and store.get_system(options["system"]) is None:
            raise CommandError(f"Unknown system: {options['system']}")

        self.stdout.write(f"Scanning: {path}")
        return await scan_directory(
            store,
            path,
            system_id=options["system"],
            progress_callback=on_progress,
            batch_size=options["batch_size"],
        )
