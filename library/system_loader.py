"""Load system definitions from config file."""

import json
from pathlib import Path

from .models import LibraryConfig, System


def get_systems_config() -> list[dict]:
    """Load systems from JSON config file."""
    config_path = Path(__file__).parent / "systems.json"
    with open(config_path) as f:
        data = json.load(f)
    return data.get("systems", [])


def default_systems() -> list[System]:
    """Build fresh System objects for the bundled platform table."""
    return [System.from_dict(s) for s in get_systems_config()]


def sync_systems(config: LibraryConfig) -> int:
    """Sync bundled systems into a library config.

    Bundled systems missing from the config are appended. Existing ones get
    their name, short name and extensions refreshed; user-set paths and
    systems added by the user are left as-is.

    Returns:
        Number of systems added or changed
    """
    changed = 0
    for bundled in default_systems():
        existing = config.get_system(bundled.id)
        if existing is None:
            config.systems.append(bundled)
            changed += 1
            continue

        before = existing.to_dict()
        existing.name = bundled.name
        existing.short_name = bundled.short_name
        existing.extensions = list(bundled.extensions)
        if bundled.archive_as_rom is not None:
            existing.archive_as_rom = bundled.archive_as_rom
        if existing.to_dict() != before:
            changed += 1

    return changed
