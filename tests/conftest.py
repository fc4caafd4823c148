"""Pytest configuration and shared fixtures for library tests."""

import asyncio
import json
import os
import zipfile
from pathlib import Path

import django
import pytest


def pytest_configure(config):
    """Configure Django settings before running tests."""
    os.environ.setdefault("DJANGO_SETTINGS_MODULE", "romindex.settings")
    django.setup()


def run(coro):
    """Run a coroutine to completion from a synchronous test."""
    return asyncio.run(coro)


# -----------------------------------------------------------------------------
# File helpers
# -----------------------------------------------------------------------------


def write_rom(path: Path, content: bytes) -> Path:
    """Write a fake ROM file, creating parent folders."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def write_zip(path: Path, entries: dict) -> Path:
    """Write a ZIP archive from a {name: bytes} mapping, in mapping order."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w") as zf:
        for name, content in entries.items():
            zf.writestr(name, content)
    return path


def write_library(data_dir: Path, records: list, config: dict | None = None) -> None:
    """Seed a library folder with raw JSON documents."""
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / "library.json").write_text(json.dumps(records))
    if config is not None:
        (data_dir / "library-config.json").write_text(json.dumps(config))


# -----------------------------------------------------------------------------
# System fixtures
# -----------------------------------------------------------------------------


NES_SYSTEM = {
    "id": "nes",
    "name": "Nintendo Entertainment System",
    "shortName": "NES",
    "extensions": [".nes", ".fds", ".unf", ".unif"],
}

SNES_SYSTEM = {
    "id": "snes",
    "name": "Super Nintendo Entertainment System",
    "shortName": "SNES",
    "extensions": [".sfc", ".smc"],
}

ARCADE_SYSTEM = {
    "id": "arcade",
    "name": "Arcade",
    "shortName": "Arcade",
    "extensions": [".zip", ".7z"],
}


@pytest.fixture
def library_config():
    """Config document with NES, SNES and Arcade systems."""
    return {
        "systems": [NES_SYSTEM, SNES_SYSTEM, ARCADE_SYSTEM],
        "scanRecursive": True,
        "autoScan": False,
    }


@pytest.fixture
def data_dir(tmp_path, library_config):
    """Library folder seeded with the test config and no records."""
    path = tmp_path / "data"
    write_library(path, [], library_config)
    return path


@pytest.fixture
def store(data_dir):
    """An opened LibraryStore over the test library folder."""
    from library.store import LibraryStore

    return run(LibraryStore.open(str(data_dir)))


@pytest.fixture
def rom_dir(tmp_path):
    """The /roms tree: mario.nes ("AAAA") and zelda.zip with zelda.nes ("BBBB")."""
    roms = tmp_path / "roms"
    write_rom(roms / "mario.nes", b"AAAA")
    write_zip(roms / "zelda.zip", {"zelda.nes": b"BBBB"})
    return roms
