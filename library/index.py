"""Reverse lookup indices used to detect unchanged files during a scan."""

import os
from typing import Iterable, Optional

from .models import Record
from .walker import Candidate


class LibraryIndex:
    """Maps ROM paths and source archive paths back to record ids.

    The index is derived state. It is rebuilt from the full record set after
    every bulk change (load, migration, scan, removal) instead of being
    patched record by record.
    """

    def __init__(self):
        self.by_path: dict[str, str] = {}
        self.by_archive: dict[str, str] = {}
        self.by_duplicate: dict[str, str] = {}

    def __len__(self) -> int:
        return len(self.by_path) + len(self.by_archive) + len(self.by_duplicate)

    def rebuild(self, records: Iterable[Record]) -> None:
        by_path = {}
        by_archive = {}
        by_duplicate = {}
        for record in records:
            if record.source_archive_path:
                by_archive[record.source_archive_path] = record.id
            elif record.rom_path:
                by_path[record.rom_path] = record.id
            for source in record.duplicate_sources:
                by_duplicate.setdefault(source, record.id)
        self.by_path = by_path
        self.by_archive = by_archive
        self.by_duplicate = by_duplicate

    def lookup(self, candidate: Candidate) -> Optional[str]:
        """Return the id of the record previously resolved from this candidate."""
        if candidate.is_archive:
            record_id = self.by_archive.get(candidate.path)
        else:
            record_id = self.by_path.get(candidate.path)
        if record_id is None:
            record_id = self.by_duplicate.get(candidate.path)
        return record_id

    def is_known(self, candidate: Candidate) -> bool:
        return self.lookup(candidate) is not None

    @staticmethod
    def is_cache_hit(candidate: Candidate, record: Optional[Record]) -> bool:
        """Check if a candidate can skip hashing and extraction.

        Requires the exact modification time stored at the last scan for this
        source and ROM bytes that are still on disk. A wiped ROM cache
        therefore forces archives to be extracted again.
        """
        if record is None:
            return False
        if candidate.path == record.source_path:
            mtime, rom_path = record.rom_mtime, record.rom_path
        else:
            duplicate = record.duplicate_sources.get(candidate.path)
            if duplicate is None:
                return False
            mtime, rom_path = duplicate.rom_mtime, duplicate.rom_path
        if mtime is None or mtime != candidate.mtime:
            return False
        return os.path.isfile(rom_path)
