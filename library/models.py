"""Library data model: systems, records and the library configuration.

Records and configuration are persisted as JSON documents with camelCase keys.
Each model keeps unknown keys in an ``extra`` map so fields owned by other
layers (artwork, play tracking, emulator cores) survive a load/save cycle.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from .extensions import is_archive_extension, native_extensions, normalize_extension


@dataclass
class System:
    """A platform definition. Static configuration, not content-addressed."""

    id: str  # "nes"
    name: str  # "Nintendo Entertainment System"
    short_name: str  # "NES"
    extensions: list[str] = field(default_factory=list)  # [".nes", ".fds"]
    roms_path: Optional[str] = None  # Folder scanned by scan_system_folders
    archive_as_rom: Optional[bool] = None  # None = derived from extensions
    extra: dict[str, Any] = field(default_factory=dict)  # corePath, iconPath, ...

    JSON_FIELDS = {
        "id": "id",
        "name": "name",
        "shortName": "short_name",
        "extensions": "extensions",
        "romsPath": "roms_path",
        "archiveAsRom": "archive_as_rom",
    }

    def __post_init__(self):
        self.extensions = [normalize_extension(ext) for ext in self.extensions]

    def __str__(self) -> str:
        return self.name

    @property
    def treats_archive_as_rom(self) -> bool:
        """True when a .zip/.7z for this system is the ROM itself (e.g., MAME)."""
        if self.archive_as_rom is not None:
            return self.archive_as_rom
        return bool(self.extensions) and all(
            is_archive_extension(ext) for ext in self.extensions
        )

    @property
    def native_extensions(self) -> set[str]:
        """Extensions that identify a ROM of this system inside an archive."""
        return native_extensions(self.extensions)

    def matches_extension(self, ext: str) -> bool:
        return normalize_extension(ext) in self.extensions

    @classmethod
    def from_dict(cls, data: dict) -> "System":
        known = {
            attr: data[key] for key, attr in cls.JSON_FIELDS.items() if key in data
        }
        extra = {k: v for k, v in data.items() if k not in cls.JSON_FIELDS}
        known.setdefault("short_name", data.get("name", data.get("id", "")))
        known.setdefault("name", known["short_name"])
        return cls(**known, extra=extra)

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "name": self.name,
            "shortName": self.short_name,
            "extensions": list(self.extensions),
        }
        if self.roms_path is not None:
            data["romsPath"] = self.roms_path
        if self.archive_as_rom is not None:
            data["archiveAsRom"] = self.archive_as_rom
        data.update(self.extra)
        return data


@dataclass
class RomHashes:
    """Compatibility fingerprints used by ROM databases (No-Intro, Redump)."""

    crc32: str = ""
    sha1: str = ""
    md5: str = ""

    @property
    def is_complete(self) -> bool:
        return bool(self.crc32 and self.sha1 and self.md5)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["RomHashes"]:
        if not isinstance(data, dict):
            return None
        return cls(
            crc32=data.get("crc32") or "",
            sha1=data.get("sha1") or "",
            md5=data.get("md5") or "",
        )

    def to_dict(self) -> dict:
        return {
            key: value
            for key, value in (
                ("crc32", self.crc32),
                ("sha1", self.sha1),
                ("md5", self.md5),
            )
            if value
        }


@dataclass
class DuplicateSource:
    """Another file or archive holding the same ROM bytes as a record."""

    rom_path: str  # Readable ROM bytes (the file itself, or a cache file)
    rom_mtime: Optional[float] = None  # mtime of the duplicate file or archive

    @classmethod
    def from_dict(cls, data: dict) -> "DuplicateSource":
        return cls(rom_path=data.get("romPath", ""), rom_mtime=data.get("romMtime"))

    def to_dict(self) -> dict:
        data = {"romPath": self.rom_path}
        if self.rom_mtime is not None:
            data["romMtime"] = self.rom_mtime
        return data


@dataclass
class Record:
    """A content-identified library entry.

    The core fields are owned by the indexing engine. Everything else a
    collaborator attaches (coverArt, metadata, favorite, playTime, ...) lives in
    ``extra`` and is only ever changed through ``apply_update``.
    """

    id: str  # SHA-256 of the resolved ROM bytes (64 hex chars)
    title: str
    system: str  # System display name
    system_id: str
    rom_path: str  # Readable ROM bytes (cache file for archived ROMs)
    rom_mtime: Optional[float] = None  # mtime of rom_path or of the source archive
    rom_hashes: Optional[RomHashes] = None
    source_archive_path: Optional[str] = None
    # Other sources with the same bytes, keyed by file or archive path
    duplicate_sources: dict[str, DuplicateSource] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    JSON_FIELDS = {
        "id": "id",
        "title": "title",
        "system": "system",
        "systemId": "system_id",
        "romPath": "rom_path",
        "romMtime": "rom_mtime",
        "romHashes": "rom_hashes",
        "sourceArchivePath": "source_archive_path",
        "duplicateSources": "duplicate_sources",
    }

    def __str__(self) -> str:
        return f"{self.title} ({self.system_id})"

    @property
    def source_path(self) -> str:
        """The file or archive this record was last resolved from."""
        return self.source_archive_path or self.rom_path

    @property
    def rom_paths(self) -> list[str]:
        """Every location holding this record's ROM bytes."""
        return [self.rom_path] + [d.rom_path for d in self.duplicate_sources.values()]

    @property
    def has_complete_hashes(self) -> bool:
        return self.rom_hashes is not None and self.rom_hashes.is_complete

    @classmethod
    def from_dict(cls, data: dict) -> "Record":
        extra = {k: v for k, v in data.items() if k not in cls.JSON_FIELDS}
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            system=data.get("system", ""),
            system_id=data.get("systemId", ""),
            rom_path=data.get("romPath", ""),
            rom_mtime=data.get("romMtime"),
            rom_hashes=RomHashes.from_dict(data.get("romHashes")),
            source_archive_path=data.get("sourceArchivePath") or None,
            duplicate_sources=_duplicates_from_dict(data.get("duplicateSources")),
            extra=extra,
        )

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "system": self.system,
            "systemId": self.system_id,
            "romPath": self.rom_path,
        }
        if self.rom_mtime is not None:
            data["romMtime"] = self.rom_mtime
        if self.rom_hashes is not None:
            data["romHashes"] = self.rom_hashes.to_dict()
        if self.source_archive_path:
            data["sourceArchivePath"] = self.source_archive_path
        if self.duplicate_sources:
            data["duplicateSources"] = {
                path: duplicate.to_dict()
                for path, duplicate in self.duplicate_sources.items()
            }
        data.update(self.extra)
        return data

    def apply_update(self, fields: dict) -> None:
        """Shallow-merge a partial JSON-shaped update onto this record.

        Core keys replace the matching attribute, any other key replaces the
        collaborator value of the same name. The id is immutable.
        """
        for key, value in fields.items():
            if key == "id":
                continue
            attr = self.JSON_FIELDS.get(key)
            if attr == "rom_hashes":
                self.rom_hashes = RomHashes.from_dict(value)
            elif attr == "duplicate_sources":
                self.duplicate_sources = _duplicates_from_dict(value)
            elif attr is not None:
                setattr(self, attr, value)
            else:
                self.extra[key] = value


def _duplicates_from_dict(data) -> dict[str, DuplicateSource]:
    if not isinstance(data, dict):
        return {}
    return {
        path: DuplicateSource.from_dict(value)
        for path, value in data.items()
        if isinstance(value, dict)
    }


@dataclass
class LibraryConfig:
    """Library-wide settings stored next to the record set."""

    systems: list[System] = field(default_factory=list)
    roms_base_path: Optional[str] = None
    scan_recursive: bool = True
    auto_scan: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    JSON_FIELDS = {"systems", "romsBasePath", "scanRecursive", "autoScan"}

    def get_system(self, system_id: str) -> Optional[System]:
        for system in self.systems:
            if system.id == system_id:
                return system
        return None

    @classmethod
    def from_dict(cls, data: dict) -> "LibraryConfig":
        return cls(
            systems=[System.from_dict(s) for s in data.get("systems", [])],
            roms_base_path=data.get("romsBasePath"),
            scan_recursive=data.get("scanRecursive", True),
            auto_scan=data.get("autoScan", False),
            extra={k: v for k, v in data.items() if k not in cls.JSON_FIELDS},
        )

    def to_dict(self) -> dict:
        data = {"systems": [s.to_dict() for s in self.systems]}
        if self.roms_base_path is not None:
            data["romsBasePath"] = self.roms_base_path
        data["scanRecursive"] = self.scan_recursive
        data["autoScan"] = self.auto_scan
        data.update(self.extra)
        return data
