"""ROM directory scanner.

Scans directories for ROM files and adds them to the library store.

A scan runs in three steps:

1. Walk the directory tree and classify files (no hashing).
2. Order the candidates: files the library has never seen come before files
   it already indexed, so new games show up before revalidation work runs.
3. Resolve candidates in fixed-size batches. Candidates inside a batch run
   concurrently, the next batch starts only when the current one is done.
   Unchanged files are cache hits and are not hashed again.

The library file is written once at the end of the scan.
"""

import asyncio
import logging
import os
import tempfile
from typing import Callable, Optional

from django.conf import settings

from .archive import extract_file_from_archive, find_first_match
from .extensions import get_extension
from .hashing import ContentHash, UnreadableSourceError, hash_file
from .models import Record
from .parser import title_from_path
from .walker import Candidate, walk_directory

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 4

# Candidate outcomes
STATUS_INDEXED = "indexed"  # Hashed (and extracted if archived)
STATUS_CACHE_HIT = "cache_hit"  # Unchanged since last scan, fields refreshed
STATUS_NOT_FOUND = "not_found"  # Archive without a matching ROM entry
STATUS_ERROR = "error"  # Unreadable file or archive

ProgressCallback = Callable[[dict], None]


def get_scan_batch_size() -> int:
    """Get the configured number of candidates resolved concurrently."""
    return getattr(settings, "SCAN_BATCH_SIZE", DEFAULT_BATCH_SIZE) or DEFAULT_BATCH_SIZE


class CandidateResult:
    """Outcome of resolving one candidate."""

    def __init__(
        self,
        status: str,
        record: Optional[Record] = None,
        is_new: bool = False,
        replaces: Optional[str] = None,
    ):
        self.status = status
        self.record = record
        self.is_new = is_new
        self.replaces = replaces  # Id this source resolved to before

    def __repr__(self) -> str:
        return f"CandidateResult({self.status!r}, record={self.record!r})"


def _refresh_cached_record(store, record: Record, candidate: Candidate) -> None:
    """Update display fields of a record whose source did not change."""
    if candidate.path == record.source_path:
        record.title = title_from_path(candidate.path)
    system = candidate.system or store.get_system(record.system_id)
    if system is not None:
        record.system = system.name
        record.system_id = system.id


def _extract_and_hash(store, archive_path: str, entry_name: str) -> tuple[str, ContentHash]:
    """
    Extract one archive entry into the ROM cache and hash it.

    The entry is extracted into a staging folder first because the final
    file name embeds the content id. If a file with that name already exists
    the staged copy is thrown away, so identical content is cached once.

    Returns:
        Tuple of (cached ROM path, content hash)
    """
    store.cache_dir.mkdir(parents=True, exist_ok=True)

    with tempfile.TemporaryDirectory(
        prefix=".staging-", dir=str(store.cache_dir)
    ) as staging_dir:
        extracted = extract_file_from_archive(archive_path, entry_name, staging_dir)
        content = hash_file(extracted)
        final_path = store.cache_path_for(content.id, entry_name)

        if final_path.exists():
            logger.debug("ROM already in cache: %s", final_path)
        else:
            os.replace(extracted, final_path)

    return str(final_path), content


async def _resolve_file(candidate: Candidate) -> Record:
    content = await asyncio.to_thread(hash_file, candidate.path)
    system = candidate.system
    return Record(
        id=content.id,
        title=title_from_path(candidate.path),
        system=system.name,
        system_id=system.id,
        rom_path=candidate.path,
        rom_mtime=candidate.mtime,
        rom_hashes=content.rom_hashes,
    )


async def _resolve_archive(store, candidate: Candidate) -> Optional[Record]:
    system = candidate.system
    if system is not None:
        extensions = system.native_extensions
    else:
        extensions = store.resolver.all_native_extensions

    entry = await asyncio.to_thread(find_first_match, candidate.path, extensions)
    if entry is None:
        logger.debug("No ROM found in archive: %s", candidate.path)
        return None

    entry_system = store.resolver.system_for_entry(entry.extension, system)
    if entry_system is None:
        return None

    rom_path, content = await asyncio.to_thread(
        _extract_and_hash, store, candidate.path, entry.name
    )
    logger.debug(
        "Extracted %s!%s to %s", os.path.basename(candidate.path), entry.name, rom_path
    )
    return Record(
        id=content.id,
        title=title_from_path(candidate.path),
        system=entry_system.name,
        system_id=entry_system.id,
        rom_path=rom_path,
        rom_mtime=candidate.mtime,
        rom_hashes=content.rom_hashes,
        source_archive_path=candidate.path,
    )


async def process_candidate(store, candidate: Candidate) -> CandidateResult:
    """
    Resolve one candidate into a record.

    Args:
        store: LibraryStore being scanned into
        candidate: Candidate from the walker

    Returns:
        CandidateResult; failures are reported through the status, never raised
    """
    record_id = store.index.lookup(candidate)
    if record_id is not None:
        record = store.get_record(record_id)
        if store.index.is_cache_hit(candidate, record):
            _refresh_cached_record(store, record, candidate)
            return CandidateResult(STATUS_CACHE_HIT, record)

    try:
        if candidate.is_archive:
            resolved = await _resolve_archive(store, candidate)
            if resolved is None:
                return CandidateResult(STATUS_NOT_FOUND)
        else:
            resolved = await _resolve_file(candidate)
    except UnreadableSourceError as e:
        logger.warning("Cannot read ROM %s: %s", candidate.path, e)
        return CandidateResult(STATUS_ERROR)
    except (IOError, OSError, ValueError) as e:
        logger.warning("Cannot process %s: %s", candidate.path, e)
        return CandidateResult(STATUS_ERROR)

    record, is_new = store.merge_record(resolved)
    replaces = None
    if record_id is not None and record_id != record.id:
        replaces = record_id
        old = store.get_record(record_id)
        if old is not None:
            store.drop_duplicate(old, candidate.path)
    if is_new:
        logger.debug("Added ROM: %s (system: %s)", record.rom_path, record.system_id)
    return CandidateResult(STATUS_INDEXED, record, is_new=is_new, replaces=replaces)


def order_candidates(store, candidates: list[Candidate]) -> list[Candidate]:
    """Put candidates the library has never indexed before known ones."""
    new = [c for c in candidates if not store.index.is_known(c)]
    known = [c for c in candidates if store.index.is_known(c)]
    return new + known


async def scan_directory(
    store,
    base_path: str,
    system_id: Optional[str] = None,
    progress_callback: Optional[ProgressCallback] = None,
    batch_size: Optional[int] = None,
) -> list[Record]:
    """
    Scan a directory for ROMs and add them to the store.

    Missing or corrupt files never abort the scan; they are logged and
    counted. The library is saved once at the end if any record was touched.

    Args:
        store: LibraryStore to scan into
        base_path: Path to scan
        system_id: Treat every ROM found as this system
        progress_callback: Called with one dict per candidate:
            {"event": "progress", "record", "is_new", "processed", "total",
            "cache_hits", "path"}, then once with
            {"event": "complete", "processed", "added", "not_found", "errors",
            "cache_hits"}
        batch_size: Candidates resolved concurrently (default SCAN_BATCH_SIZE)

    Returns:
        Records touched by this scan, in processing order

    Raises:
        OSError: If the library file cannot be written
    """
    base_path = os.path.abspath(base_path)
    batch_size = batch_size or get_scan_batch_size()
    stats = {"processed": 0, "added": 0, "not_found": 0, "errors": 0, "cache_hits": 0}

    system = None
    if system_id:
        system = store.get_system(system_id)
        if system is None:
            logger.error("Unknown system: %s", system_id)
            _emit(progress_callback, {"event": "complete", **stats})
            return []

    logger.info("Starting scan of directory: %s", base_path)
    candidates = walk_directory(
        base_path, store.resolver, system, store.config.scan_recursive
    )
    ordered = order_candidates(store, candidates)
    total = len(ordered)

    touched: dict[str, Record] = {}
    replaced: list[tuple[str, str, Record]] = []

    for start in range(0, total, batch_size):
        batch = ordered[start : start + batch_size]
        results = await asyncio.gather(
            *(process_candidate(store, candidate) for candidate in batch),
            return_exceptions=True,
        )

        for candidate, result in zip(batch, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.error(
                    "Failed to process %s", candidate.path, exc_info=result
                )
                result = CandidateResult(STATUS_ERROR)

            stats["processed"] += 1
            if result.status == STATUS_CACHE_HIT:
                stats["cache_hits"] += 1
            elif result.status == STATUS_NOT_FOUND:
                stats["not_found"] += 1
            elif result.status == STATUS_ERROR:
                stats["errors"] += 1
            elif result.is_new:
                stats["added"] += 1

            if result.record is not None:
                touched.setdefault(result.record.id, result.record)
            if result.replaces is not None:
                replaced.append((result.replaces, candidate.path, result.record))

            _emit(
                progress_callback,
                {
                    "event": "progress",
                    "record": result.record,
                    "is_new": result.is_new,
                    "processed": stats["processed"],
                    "total": total,
                    "cache_hits": stats["cache_hits"],
                    "path": candidate.path,
                },
            )

    # Old records are only retired once every candidate had a chance to claim them
    for old_id, source, record in replaced:
        if store.retire_source(old_id, source, record):
            touched.pop(old_id, None)

    if touched:
        store.rebuild_indices()
        await store.save()

    logger.info(
        "Scan complete: processed=%d, added=%d, cache_hits=%d, not_found=%d, errors=%d",
        stats["processed"],
        stats["added"],
        stats["cache_hits"],
        stats["not_found"],
        stats["errors"],
    )
    _emit(progress_callback, {"event": "complete", **stats})
    return list(touched.values())


async def scan_system_folders(
    store, progress_callback: Optional[ProgressCallback] = None
) -> list[Record]:
    """Scan the ROM folder of every system that has one configured."""
    records = []
    for system in list(store.systems):
        if not system.roms_path:
            continue
        if not os.path.isdir(system.roms_path):
            logger.warning(
                "ROM folder for %s does not exist: %s", system.name, system.roms_path
            )
            continue
        records.extend(
            await scan_directory(
                store, system.roms_path, system.id, progress_callback=progress_callback
            )
        )
    return records


async def add_rom(store, rom_path: str, system_id: str) -> Optional[Record]:
    """
    Add a single ROM file to the library.

    Args:
        store: LibraryStore to add to
        rom_path: Path to the ROM file
        system_id: System the ROM belongs to

    Returns:
        The stored record, or None if the system is unknown, the extension
        does not belong to the system, or the file cannot be read
    """
    system = store.get_system(system_id)
    if system is None:
        logger.warning("Cannot add %s: unknown system %s", rom_path, system_id)
        return None

    ext = get_extension(rom_path)
    if not system.matches_extension(ext):
        logger.warning(
            "Cannot add %s: extension %s not valid for %s", rom_path, ext, system.name
        )
        return None

    rom_path = os.path.abspath(rom_path)
    try:
        mtime = os.stat(rom_path).st_mtime
        content = await asyncio.to_thread(hash_file, rom_path)
    except (UnreadableSourceError, OSError) as e:
        logger.warning("Cannot add %s: %s", rom_path, e)
        return None

    record, _ = store.merge_record(
        Record(
            id=content.id,
            title=title_from_path(rom_path),
            system=system.name,
            system_id=system.id,
            rom_path=rom_path,
            rom_mtime=mtime,
            rom_hashes=content.rom_hashes,
        )
    )
    store.rebuild_indices()
    await store.save()
    return record


def _emit(progress_callback: Optional[ProgressCallback], event: dict) -> None:
    if progress_callback:
        progress_callback(event)
