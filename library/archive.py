"""Archive handling utilities for scanning compressed files."""

import logging
import shutil
import tempfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional

import py7zr

from .extensions import COMPRESSED_EXTENSIONS, get_extension, is_junk_path

logger = logging.getLogger(__name__)


class ZipSlipError(ValueError):
    """Raised when archive path traversal attack is detected."""

    pass


def _validate_archive_path(internal_path: str, dest_dir: str) -> Path:
    """Validate that an archive internal path doesn't escape the destination directory.

    Prevents ZIP slip attacks where malicious archives contain paths like
    '../../../etc/passwd' that could write files outside the intended directory.

    Args:
        internal_path: The path inside the archive
        dest_dir: The destination directory for extraction

    Returns:
        The resolved safe path

    Raises:
        ZipSlipError: If the path would escape the destination directory
    """
    dest = Path(dest_dir).resolve()
    target = (dest / internal_path).resolve()

    try:
        target.relative_to(dest)
    except ValueError:
        raise ZipSlipError(
            f"Attempted path traversal in archive: '{internal_path}' "
            f"would escape destination '{dest_dir}'"
        )
    if target == dest:
        raise ZipSlipError(f"Archive entry '{internal_path}' has no file name")

    return target


class ArchiveInfo:
    """Information about a file inside an archive."""

    def __init__(self, name: str, size: int):
        self.name = name  # Path inside archive
        self.size = size  # Uncompressed size

    def __repr__(self) -> str:
        return f"ArchiveInfo(name={self.name!r}, size={self.size})"

    @property
    def basename(self) -> str:
        """Entry file name without any folders inside the archive."""
        return PurePosixPath(self.name.replace("\\", "/")).name

    @property
    def extension(self) -> str:
        return get_extension(self.basename)


def list_archive_contents(archive_path: str) -> list[ArchiveInfo]:
    """
    List files inside an archive in archive order.

    Directory entries and platform junk (``__MACOSX/`` folders, ``._*``
    resource forks, ``.DS_Store``) are left out.

    Args:
        archive_path: Path to .zip or .7z file

    Returns:
        List of ArchiveInfo objects for each file

    Raises:
        ValueError: If archive format not supported
        IOError: If archive cannot be read
    """
    ext = get_extension(archive_path)

    if ext == ".zip":
        contents = _list_zip_contents(archive_path)
    elif ext == ".7z":
        contents = _list_7z_contents(archive_path)
    else:
        raise ValueError(f"Unsupported archive format: {ext}")

    return [item for item in contents if not is_junk_path(item.name)]


def _list_zip_contents(archive_path: str) -> list[ArchiveInfo]:
    """List file entries of a ZIP archive."""
    contents = []
    try:
        with zipfile.ZipFile(archive_path, "r") as zf:
            for info in zf.infolist():
                if not info.is_dir():
                    contents.append(
                        ArchiveInfo(
                            name=info.filename,
                            size=info.file_size,  # Uncompressed size
                        )
                    )
    except Exception as e:
        logger.error("Failed to read ZIP archive %s: %s", archive_path, e)
        raise IOError(f"Failed to read ZIP archive: {e}") from e
    return contents


def _list_7z_contents(archive_path: str) -> list[ArchiveInfo]:
    """List file entries of a 7z archive."""
    contents = []
    try:
        with py7zr.SevenZipFile(archive_path, "r") as szf:
            for info in szf.list():
                if not info.is_directory:
                    contents.append(
                        ArchiveInfo(
                            name=info.filename,
                            size=info.uncompressed,
                        )
                    )
    except Exception as e:
        logger.error("Failed to read 7z archive %s: %s", archive_path, e)
        raise IOError(f"Failed to read 7z archive: {e}") from e
    return contents


def is_archive_file(filename: str) -> bool:
    """
    Check if filename has a supported archive extension.

    Args:
        filename: Filename to check

    Returns:
        True if file has .zip or .7z extension, False otherwise
    """
    return get_extension(filename) in COMPRESSED_EXTENSIONS


def is_nested_archive(filename: str) -> bool:
    """
    Check if a filename inside an archive is itself an archive.

    This is used to prevent recursively scanning archives within archives.

    Args:
        filename: Filename to check

    Returns:
        True if filename is an archive, False otherwise
    """
    return is_archive_file(filename)


def find_first_match(
    archive_path: str, extensions: Iterable[str]
) -> Optional[ArchiveInfo]:
    """
    Find the first entry of an archive whose extension is in ``extensions``.

    One archive yields at most one ROM: the first match in archive order
    wins, any further ROMs in the archive are ignored. Nested archives never
    match.

    Args:
        archive_path: Path to archive file
        extensions: Accepted extensions including the dot (e.g., {".nes"})

    Returns:
        ArchiveInfo of the matching entry, or None if nothing matches

    Raises:
        ValueError: If archive format not supported
        IOError: If archive cannot be read
    """
    wanted = {ext.lower() for ext in extensions}

    for item in list_archive_contents(archive_path):
        if is_nested_archive(item.name):
            continue
        if item.extension in wanted:
            return item

    return None


def extract_file_from_archive(
    archive_path: str, internal_path: str, dest_dir: str
) -> str:
    """
    Extract a single file from .zip or .7z archive into a directory.

    Folders inside the archive are flattened: the entry is written as
    ``dest_dir/<entry basename>``, replacing any existing file of that name.

    Args:
        archive_path: Path to the archive file
        internal_path: Path of the file within the archive to extract
        dest_dir: Existing directory to extract into

    Returns:
        Path of the extracted file

    Raises:
        FileNotFoundError: If internal_path doesn't exist in the archive
        ZipSlipError: If the entry name would escape dest_dir
        ValueError: If archive format is unsupported
        IOError: If archive cannot be read or extraction fails
    """
    basename = PurePosixPath(internal_path.replace("\\", "/")).name
    dest_path = _validate_archive_path(basename, dest_dir)

    ext = get_extension(archive_path)

    if ext == ".zip":
        _extract_from_zip(archive_path, internal_path, dest_path)
    elif ext == ".7z":
        _extract_from_7z(archive_path, internal_path, dest_path)
    else:
        raise ValueError(f"Unsupported archive format: {ext}")

    return str(dest_path)


def _extract_from_zip(archive_path: str, internal_path: str, dest_path: Path) -> None:
    """Stream one ZIP entry to dest_path."""
    try:
        with zipfile.ZipFile(archive_path, "r") as zf:
            with zf.open(internal_path) as source, open(dest_path, "wb") as target:
                shutil.copyfileobj(source, target)
    except KeyError:
        raise FileNotFoundError(
            f"File '{internal_path}' not found in ZIP archive"
        ) from None
    except Exception as e:
        logger.error("Failed to extract from ZIP archive %s: %s", archive_path, e)
        raise IOError(f"Failed to extract from ZIP archive: {e}") from e


def _extract_from_7z(archive_path: str, internal_path: str, dest_path: Path) -> None:
    """Extract one 7z entry to dest_path.

    py7zr only extracts to directories, so the entry goes to a temp dir first
    and is then moved into place.
    """
    try:
        with tempfile.TemporaryDirectory(dir=dest_path.parent) as temp_dir:
            # Validate path even for temp extraction
            extracted_file = _validate_archive_path(internal_path, temp_dir)

            with py7zr.SevenZipFile(archive_path, "r") as szf:
                szf.extract(path=temp_dir, targets=[internal_path])

            if not extracted_file.is_file():
                raise FileNotFoundError(
                    f"File '{internal_path}' not found in 7z archive"
                )

            shutil.move(str(extracted_file), str(dest_path))
    except (ZipSlipError, FileNotFoundError):
        raise
    except Exception as e:
        logger.error("Failed to extract from 7z archive %s: %s", archive_path, e)
        raise IOError(f"Failed to extract from 7z archive: {e}") from e
