"""Directory walker producing classified ROM candidates.

The walk only looks at names and stat data. Hashing and archive inspection
happen later in the scanner, so a full walk is cheap and yields a stable
total for progress reporting.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from .extensions import get_extension, is_archive_extension, is_junk_path
from .models import System
from .systems import SystemResolver

logger = logging.getLogger(__name__)


@dataclass
class Candidate:
    """A file that could become a library record."""

    path: str  # Absolute path
    mtime: float  # st_mtime at walk time
    extension: str  # Lowercased, with dot
    system: Optional[System] = None  # None only for archives without a folder system
    is_archive: bool = False  # True if the file must be opened to find the ROM

    @property
    def filename(self) -> str:
        return os.path.basename(self.path)


def classify_file(
    filename: str, resolver: SystemResolver, system: Optional[System] = None
) -> Optional[tuple[Optional[System], bool]]:
    """
    Decide whether a file is a ROM candidate.

    Args:
        filename: File name (or path)
        resolver: Lookup over all configured systems
        system: System fixed for this part of the walk, if any

    Returns:
        (system, is_archive) for candidates, None for files to ignore.
        Archives are always candidates; they are only treated as plain ROMs
        when the filtering system's own format is an archive (e.g., Arcade).
    """
    ext = get_extension(filename)
    if not ext:
        return None

    if is_archive_extension(ext):
        if system is not None and system.treats_archive_as_rom:
            return system, False
        return system, True

    if system is not None:
        return (system, False) if system.matches_extension(ext) else None

    matched = resolver.by_extension(ext)
    if matched is None:
        return None
    return matched, False


def walk_directory(
    root: str,
    resolver: SystemResolver,
    system: Optional[System] = None,
    recursive: bool = True,
) -> list[Candidate]:
    """
    Recursively enumerate ROM candidates under a directory.

    When no system is fixed, a folder named after a system (its id, name or
    short name, case-insensitive) fixes that system for everything below it.
    Entries are visited in name order so repeated walks give the same list.

    Unreadable directories are logged and skipped; files whose stat fails
    are skipped.

    Args:
        root: Directory to walk
        resolver: Lookup over all configured systems
        system: Restrict the walk to this system
        recursive: Descend into subdirectories

    Returns:
        Candidates in walk order
    """
    root = os.path.abspath(root)
    candidates: list[Candidate] = []

    if not os.path.isdir(root):
        logger.error("Directory not found: %s", root)
        return candidates

    _walk(root, resolver, system, recursive, candidates, set())
    return candidates


def _walk(
    directory: str,
    resolver: SystemResolver,
    system: Optional[System],
    recursive: bool,
    candidates: list[Candidate],
    visited: set,
) -> None:
    real_path = os.path.realpath(directory)
    if real_path in visited:
        logger.debug("Skipped already visited directory: %s", directory)
        return
    visited.add(real_path)

    try:
        with os.scandir(directory) as it:
            entries = sorted(it, key=lambda e: e.name)
    except OSError as e:
        logger.warning("Cannot read directory %s: %s", directory, e)
        return

    for entry in entries:
        if is_junk_path(entry.name):
            continue

        try:
            is_dir = entry.is_dir()
            is_file = not is_dir and entry.is_file()
        except OSError as e:
            logger.debug("Cannot stat %s: %s", entry.path, e)
            continue

        if is_dir:
            if not recursive:
                continue
            sub_system = system
            if sub_system is None:
                sub_system = resolver.by_name(entry.name)
                if sub_system is not None:
                    logger.debug(
                        "Matched folder %s to system %s", entry.path, sub_system.id
                    )
            _walk(entry.path, resolver, sub_system, recursive, candidates, visited)
            continue

        if not is_file:
            continue

        classified = classify_file(entry.name, resolver, system)
        if classified is None:
            continue

        try:
            mtime = entry.stat().st_mtime
        except OSError as e:
            logger.warning("Cannot stat %s: %s", entry.path, e)
            continue

        file_system, is_archive = classified
        candidates.append(
            Candidate(
                path=entry.path,
                mtime=mtime,
                extension=get_extension(entry.name),
                system=file_system,
                is_archive=is_archive,
            )
        )
