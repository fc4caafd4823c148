"""Persistent library store.

The store owns the record set, the library configuration and the reverse
indices derived from the records. Both documents are JSON files rewritten
wholesale on every mutation.

Open a store with ``await LibraryStore.open()``; it returns only after the
files are loaded and legacy records are migrated.
"""

import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Optional

from django.conf import settings

from .index import LibraryIndex
from .migration import run_migrations
from .models import DuplicateSource, LibraryConfig, Record, System
from .system_loader import default_systems, sync_systems
from .systems import SystemResolver

logger = logging.getLogger(__name__)

LIBRARY_FILENAME = "library.json"
CONFIG_FILENAME = "library-config.json"
CACHE_DIRNAME = "rom-cache"

# Length of the id prefix in extracted ROM file names
CACHE_ID_PREFIX_LENGTH = 8


def get_data_dir() -> str:
    """Get the configured directory holding the library documents."""
    data_dir = getattr(settings, "LIBRARY_DATA_DIR", "")
    if not data_dir:
        data_dir = os.path.join(os.path.expanduser("~"), ".romindex")
    return data_dir


def get_cache_dir(data_dir: str) -> str:
    """Get the configured directory for ROMs extracted from archives."""
    return getattr(settings, "ROM_CACHE_DIR", "") or os.path.join(
        data_dir, CACHE_DIRNAME
    )


def default_config() -> LibraryConfig:
    """Config used on first run."""
    return LibraryConfig(
        systems=default_systems(),
        roms_base_path=os.path.join(os.path.expanduser("~"), "ROMs"),
        scan_recursive=True,
        auto_scan=False,
    )


def write_json_atomic(path: Path, data) -> None:
    """Replace a JSON document in one step via a temp file in the same folder."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _is_unchanged(source: str, mtime, rom_path: str) -> bool:
    """Check that a source keeps its indexed mtime and its ROM bytes exist."""
    if mtime is None:
        return False
    try:
        return os.stat(source).st_mtime == mtime and os.path.isfile(rom_path)
    except OSError:
        return False


class LibraryStore:
    """Record set, configuration and indices for one library directory."""

    def __init__(self, data_dir: str, cache_dir: Optional[str] = None):
        self.data_dir = Path(data_dir)
        self.cache_dir = Path(cache_dir or get_cache_dir(str(self.data_dir)))
        self.library_path = self.data_dir / LIBRARY_FILENAME
        self.config_path = self.data_dir / CONFIG_FILENAME

        self.config = LibraryConfig()
        self.records: dict[str, Record] = {}
        self.index = LibraryIndex()
        self.resolver = SystemResolver([])

    def __repr__(self) -> str:
        return f"<LibraryStore {self.data_dir} ({len(self.records)} records)>"

    @classmethod
    async def open(
        cls, data_dir: Optional[str] = None, cache_dir: Optional[str] = None
    ) -> "LibraryStore":
        """
        Load a library and run pending migrations.

        Args:
            data_dir: Folder of library.json and library-config.json
                (defaults to settings.LIBRARY_DATA_DIR)
            cache_dir: Folder for ROMs extracted from archives
                (defaults to settings.ROM_CACHE_DIR or <data_dir>/rom-cache)

        Returns:
            A fully loaded store
        """
        store = cls(data_dir or get_data_dir(), cache_dir)
        await asyncio.to_thread(store._load)
        await run_migrations(store)
        return store

    # ------------------------------------------------------------------
    # Loading and saving
    # ------------------------------------------------------------------

    def _load(self) -> None:
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._load_config()
        self._load_library()
        self.rebuild_indices()
        self.refresh_resolver()
        logger.info(
            "Loaded library %s: %d records, %d systems",
            self.data_dir,
            len(self.records),
            len(self.config.systems),
        )

    def _load_config(self) -> None:
        try:
            with open(self.config_path, encoding="utf-8") as f:
                self.config = LibraryConfig.from_dict(json.load(f))
            return
        except FileNotFoundError:
            logger.info("No library config at %s, writing defaults", self.config_path)
            self.config = default_config()
            write_json_atomic(self.config_path, self.config.to_dict())
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            logger.error(
                "Invalid library config %s: %s, using defaults", self.config_path, e
            )
            self.config = default_config()

    def _load_library(self) -> None:
        try:
            with open(self.library_path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            self.records = {}
            return
        except json.JSONDecodeError as e:
            logger.error("Invalid library file %s: %s", self.library_path, e)
            self.records = {}
            return

        records = {}
        for item in data if isinstance(data, list) else []:
            if not isinstance(item, dict) or not item.get("id"):
                logger.warning("Skipped library entry without id: %r", item)
                continue
            record = Record.from_dict(item)
            records[record.id] = record
        self.records = records

    async def save(self) -> None:
        """Rewrite library.json from the in-memory records."""
        data = [record.to_dict() for record in self.records.values()]
        await asyncio.to_thread(write_json_atomic, self.library_path, data)
        logger.debug("Saved %d records to %s", len(data), self.library_path)

    async def save_config(self) -> None:
        """Rewrite library-config.json from the in-memory config."""
        data = self.config.to_dict()
        await asyncio.to_thread(write_json_atomic, self.config_path, data)

    def rebuild_indices(self) -> None:
        self.index.rebuild(self.records.values())

    def refresh_resolver(self) -> None:
        self.resolver = SystemResolver(self.config.systems)

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get_record(self, record_id: str) -> Optional[Record]:
        return self.records.get(record_id)

    def list_records(self, system_id: Optional[str] = None) -> list[Record]:
        """All records, or only those of one system."""
        records = list(self.records.values())
        if system_id:
            return [r for r in records if r.system_id == system_id]
        return records

    def merge_record(self, record: Record) -> tuple[Record, bool]:
        """
        Add a freshly hashed record, or merge it onto the record with its id.

        Only engine-owned fields are copied onto an existing record, so
        collaborator fields survive rescans. When the existing record's own
        source is unchanged, the new source is kept as a duplicate instead and
        the record is not repointed. A ROM extracted again into the cache is
        swapped for the cache file the record already owns. Does not save or
        reindex.

        Returns:
            Tuple of (stored record, True if the id was new)
        """
        existing = self.records.get(record.id)
        if existing is None:
            self.records[record.id] = record
            return record, True

        self._share_cache_file(existing, record)

        source = record.source_path
        if source != existing.source_path and self.is_source_current(existing):
            existing.duplicate_sources[source] = DuplicateSource(
                rom_path=record.rom_path, rom_mtime=record.rom_mtime
            )
            logger.debug("Same ROM as %s found at %s", existing, source)
            return existing, False

        previous_paths = existing.rom_paths
        existing.title = record.title
        existing.system = record.system
        existing.system_id = record.system_id
        existing.rom_path = record.rom_path
        existing.rom_mtime = record.rom_mtime
        existing.source_archive_path = record.source_archive_path
        if record.rom_hashes is not None:
            existing.rom_hashes = record.rom_hashes
        existing.duplicate_sources.pop(source, None)
        self._release_cache_files(previous_paths, existing)
        return existing, False

    def _share_cache_file(self, existing: Record, record: Record) -> None:
        if record.rom_path in existing.rom_paths:
            return
        if not self.owns_cache_path(record.rom_path):
            return
        for path in existing.rom_paths:
            if self.owns_cache_path(path) and os.path.isfile(path):
                self.delete_cache_path(record.rom_path)
                record.rom_path = path
                return

    def _release_cache_files(self, paths: list[str], record: Record) -> None:
        """Delete cached ROMs among ``paths`` that ``record`` no longer uses."""
        in_use = set(record.rom_paths)
        for path in paths:
            if path not in in_use:
                self.delete_cache_path(path)

    def is_source_current(self, record: Record) -> bool:
        """Check if a record's own source is unchanged since it was indexed."""
        return _is_unchanged(record.source_path, record.rom_mtime, record.rom_path)

    def drop_duplicate(self, record: Record, source: str) -> None:
        """Forget a duplicate source that no longer holds the record's bytes."""
        duplicate = record.duplicate_sources.pop(source, None)
        if duplicate is not None:
            self._release_cache_files([duplicate.rom_path], record)

    def promote_duplicate(self, record: Record) -> bool:
        """
        Repoint a record at its first unchanged duplicate source.

        Returns:
            True if a duplicate took over, False if none is left
        """
        for source, duplicate in list(record.duplicate_sources.items()):
            if not _is_unchanged(source, duplicate.rom_mtime, duplicate.rom_path):
                continue
            previous_paths = record.rom_paths
            del record.duplicate_sources[source]
            record.rom_path = duplicate.rom_path
            record.rom_mtime = duplicate.rom_mtime
            record.source_archive_path = (
                source if source != duplicate.rom_path else None
            )
            self._release_cache_files(previous_paths, record)
            logger.info("Moved record %s to duplicate source %s", record.id, source)
            return True
        return False

    def retire_source(self, old_id: str, source: str, record: Record) -> bool:
        """
        Handle a source that now resolves to ``record`` instead of ``old_id``.

        Nothing happens if the old record was repointed elsewhere meanwhile.
        If it has another unchanged source it moves there. Otherwise it is
        superseded by ``record``. Does not save or reindex.

        Returns:
            True if the old record was removed
        """
        old = self.records.get(old_id)
        if old is None or old.source_path != source:
            return False
        if self.promote_duplicate(old):
            return False
        self.supersede_record(old_id, record)
        return True

    def supersede_record(self, old_id: str, record: Record) -> None:
        """
        Drop a record whose source now resolves to different content.

        Collaborator fields carry over to the replacing record where it has
        none of its own. Does not save or reindex.
        """
        old = self.records.pop(old_id, None)
        if old is None:
            return
        for key, value in old.extra.items():
            record.extra.setdefault(key, value)
        self._release_cache_files(old.rom_paths, record)
        logger.info("Replaced record %s with %s for %s", old_id, record.id, record)

    async def update_record(self, record_id: str, fields: dict) -> Optional[Record]:
        """
        Shallow-merge collaborator fields onto a record and save.

        Args:
            record_id: Id of the record to update
            fields: JSON-shaped partial record (e.g., {"favorite": True})

        Returns:
            The updated record, or None if no record has this id
        """
        record = self.records.get(record_id)
        if record is None:
            logger.debug("Update for unknown record %s ignored", record_id)
            return None

        record.apply_update(fields)
        self.rebuild_indices()
        await self.save()
        return record

    async def remove_record(self, record_id: str) -> bool:
        """Remove a record and its extracted ROM files, then save."""
        record = self.records.pop(record_id, None)
        if record is None:
            return False

        self.delete_cache_files(record)
        self.rebuild_indices()
        await self.save()
        return True

    def owns_cache_path(self, path: str) -> bool:
        """Check if a ROM path lives in the extraction cache."""
        if not path:
            return False
        cache_dir = os.path.abspath(self.cache_dir)
        return os.path.dirname(os.path.abspath(path)) == cache_dir

    def delete_cache_path(self, path: str) -> None:
        if not self.owns_cache_path(path):
            return
        try:
            Path(path).unlink(missing_ok=True)
            logger.debug("Deleted cached ROM: %s", path)
        except OSError as e:
            logger.warning("Failed to delete cached ROM %s: %s", path, e)

    def delete_cache_files(self, record: Record) -> None:
        """Delete every cached ROM file the record owns."""
        for path in record.rom_paths:
            self.delete_cache_path(path)

    def cache_path_for(self, record_id: str, entry_name: str) -> Path:
        """Final location of a ROM extracted from an archive."""
        basename = os.path.basename(entry_name.replace("\\", "/"))
        return self.cache_dir / f"{record_id[:CACHE_ID_PREFIX_LENGTH]}_{basename}"

    # ------------------------------------------------------------------
    # Systems and config
    # ------------------------------------------------------------------

    @property
    def systems(self) -> list[System]:
        return self.config.systems

    def get_system(self, system_id: str) -> Optional[System]:
        return self.resolver.get(system_id)

    async def add_system(self, system: System) -> bool:
        """Add a system unless one with the same id exists."""
        if self.config.get_system(system.id) is not None:
            return False
        self.config.systems.append(system)
        self.refresh_resolver()
        await self.save_config()
        return True

    async def remove_system(self, system_id: str) -> int:
        """
        Remove a system and every record belonging to it.

        Extracted ROM files owned by the removed records are deleted too.

        Returns:
            Number of records removed
        """
        self.config.systems = [s for s in self.config.systems if s.id != system_id]
        self.refresh_resolver()

        removed = [r for r in self.records.values() if r.system_id == system_id]
        for record in removed:
            del self.records[record.id]
            self.delete_cache_files(record)
        self.rebuild_indices()

        logger.info("Removed system %s with %d records", system_id, len(removed))
        await self.save_config()
        await self.save()
        return len(removed)

    async def update_system_path(self, system_id: str, roms_path: str) -> bool:
        """Set the ROM folder scanned for a system."""
        system = self.config.get_system(system_id)
        if system is None:
            return False
        system.roms_path = roms_path
        await self.save_config()
        return True

    async def set_roms_base_path(self, base_path: str) -> None:
        self.config.roms_base_path = base_path
        await self.save_config()

    async def sync_systems(self) -> int:
        """Merge the bundled system table into the config."""
        changed = sync_systems(self.config)
        if changed:
            self.refresh_resolver()
            await self.save_config()
        return changed
