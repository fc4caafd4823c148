"""System lookup by extension and by folder name."""

import logging
from typing import Iterable, Optional

from .extensions import normalize_extension
from .models import System

logger = logging.getLogger(__name__)


class SystemResolver:
    """Read-only lookup tables over a list of configured systems.

    Lookups are case-insensitive. When several systems claim the same
    extension or name, the first one in configuration order wins.
    """

    def __init__(self, systems: Iterable[System]):
        self.systems = list(systems)
        self._by_id = {}
        self._by_name = {}
        self._by_extension = {}

        for system in self.systems:
            self._by_id.setdefault(system.id.lower(), system)
            for key in (system.id, system.name, system.short_name):
                if key:
                    self._by_name.setdefault(key.lower(), system)
            for ext in system.extensions:
                self._by_extension.setdefault(ext, system)

    def __len__(self) -> int:
        return len(self.systems)

    def __iter__(self):
        return iter(self.systems)

    def get(self, system_id: str) -> Optional[System]:
        """Find a system by its id."""
        if not system_id:
            return None
        return self._by_id.get(system_id.lower())

    def by_name(self, name: str) -> Optional[System]:
        """Find a system whose id, name or short name equals ``name``.

        Used to infer a system from a folder name met during a walk, so
        "SNES", "snes" and "Super Nintendo Entertainment System" all match.
        """
        if not name:
            return None
        return self._by_name.get(name.strip().lower())

    def by_extension(self, ext: str) -> Optional[System]:
        """Find the first system recognizing an extension."""
        return self._by_extension.get(normalize_extension(ext))

    @property
    def all_extensions(self) -> set[str]:
        """Union of every configured system's extensions."""
        return set(self._by_extension)

    @property
    def all_native_extensions(self) -> set[str]:
        """Union of every configured system's non-archive extensions."""
        exts = set()
        for system in self.systems:
            exts |= system.native_extensions
        return exts

    def system_for_entry(
        self, ext: str, system: Optional[System] = None
    ) -> Optional[System]:
        """Resolve the system of a ROM found inside an archive.

        Args:
            ext: Extension of the archive entry
            system: Filtering system for the walk, if one was fixed

        Returns:
            The filter system if it natively recognizes ``ext``, otherwise the
            first system natively recognizing it (only when no filter is set)
        """
        ext = normalize_extension(ext)
        if system is not None:
            return system if ext in system.native_extensions else None
        for candidate in self.systems:
            if ext in candidate.native_extensions:
                return candidate
        logger.debug("No system recognizes archive entry extension %s", ext)
        return None
