"""Extension categorization utilities.

This module provides utilities for:
- Normalizing file extensions
- Telling archive containers apart from native ROM formats
- Recognizing platform junk files that are never ROMs
"""

from pathlib import Path

# Compressed extensions that can contain ROMs
COMPRESSED_EXTENSIONS = {".zip", ".7z"}

# Files created by macOS archivers and Finder next to real content
JUNK_DIRECTORIES = {"__MACOSX"}
JUNK_FILENAMES = {".DS_Store", "Thumbs.db"}
RESOURCE_FORK_PREFIX = "._"


def normalize_extension(ext: str) -> str:
    """Lowercase an extension and make sure it carries the leading dot."""
    ext = ext.strip().lower()
    if ext and not ext.startswith("."):
        ext = "." + ext
    return ext


def get_extension(filename: str) -> str:
    """Get the lowercased extension of a filename or path.

    Args:
        filename: The filename (or path) to extract the extension from

    Returns:
        The extension including the dot (e.g., ".gba"), or "" if none
    """
    return Path(filename).suffix.lower()


def is_archive_extension(ext: str) -> bool:
    """Check if extension is a supported archive format.

    Args:
        ext: File extension including the dot (e.g., ".zip")

    Returns:
        True if the extension is a supported archive format.
    """
    return ext.lower() in COMPRESSED_EXTENSIONS


def native_extensions(extensions) -> set[str]:
    """Return the non-archive subset of an extension collection."""
    return {
        normalize_extension(ext)
        for ext in extensions
        if not is_archive_extension(normalize_extension(ext))
    }


def is_junk_path(path: str) -> bool:
    """Check if a path (possibly inside an archive) is platform junk.

    Matches macOS resource forks ("._game.nes"), anything under a
    "__MACOSX/" folder, and desktop metadata files like ".DS_Store".
    """
    parts = [part for part in path.replace("\\", "/").split("/") if part]
    if not parts:
        return True
    if any(part in JUNK_DIRECTORIES for part in parts[:-1]):
        return True
    name = parts[-1]
    return name in JUNK_FILENAMES or name.startswith(RESOURCE_FORK_PREFIX)
