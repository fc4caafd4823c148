"""Tests for the ROM scanner."""

import hashlib
import json
import os
import threading
import time
from unittest.mock import patch

import pytest

import library.scanner as scanner
from library.archive import extract_file_from_archive
from library.hashing import hash_file
from library.scanner import (
    STATUS_CACHE_HIT,
    STATUS_ERROR,
    STATUS_INDEXED,
    STATUS_NOT_FOUND,
    add_rom,
    order_candidates,
    process_candidate,
    scan_directory,
    scan_system_folders,
)
from library.walker import walk_directory

from conftest import run, write_rom, write_zip

AAAA_ID = hashlib.sha256(b"AAAA").hexdigest()
BBBB_ID = hashlib.sha256(b"BBBB").hexdigest()


def scan(store, path, **kwargs):
    events = []
    records = run(
        scan_directory(store, str(path), progress_callback=events.append, **kwargs)
    )
    return records, events


def touch(path, delta=10):
    stat = os.stat(path)
    os.utime(path, (stat.st_atime, stat.st_mtime + delta))


def cache_files(store):
    return sorted(p.name for p in store.cache_dir.iterdir())


# -----------------------------------------------------------------------------
# Tests for scan_directory
# -----------------------------------------------------------------------------


class TestScanDirectory:
    """Tests for scan_directory function."""

    def test_indexes_plain_and_archived_roms(self, store, rom_dir):
        records, events = scan(store, rom_dir)

        assert {r.id for r in records} == {AAAA_ID, BBBB_ID}

        mario = store.get_record(AAAA_ID)
        assert mario.rom_path == str(rom_dir / "mario.nes")
        assert mario.source_archive_path is None
        assert mario.system_id == "nes"
        assert mario.title == "mario"

        zelda = store.get_record(BBBB_ID)
        assert zelda.rom_path == str(store.cache_dir / f"{BBBB_ID[:8]}_zelda.nes")
        assert zelda.source_archive_path == str(rom_dir / "zelda.zip")
        assert zelda.rom_mtime == os.stat(rom_dir / "zelda.zip").st_mtime
        assert zelda.system == "Nintendo Entertainment System"
        assert zelda.title == "zelda"
        assert zelda.rom_hashes.sha1 == hashlib.sha1(b"BBBB").hexdigest()

        complete = events[-1]
        assert complete == {
            "event": "complete",
            "processed": 2,
            "added": 2,
            "not_found": 0,
            "errors": 0,
            "cache_hits": 0,
        }

    def test_cache_holds_only_extracted_roms(self, store, rom_dir):
        scan(store, rom_dir)
        assert cache_files(store) == [f"{BBBB_ID[:8]}_zelda.nes"]

    def test_library_saved_with_json_keys(self, store, rom_dir):
        scan(store, rom_dir)

        saved = {r["id"]: r for r in json.loads(store.library_path.read_text())}
        assert set(saved) == {AAAA_ID, BBBB_ID}
        assert saved[BBBB_ID]["sourceArchivePath"] == str(rom_dir / "zelda.zip")
        assert saved[BBBB_ID]["systemId"] == "nes"
        assert "sourceArchivePath" not in saved[AAAA_ID]
        assert set(saved[AAAA_ID]["romHashes"]) == {"crc32", "sha1", "md5"}

    def test_progress_events(self, store, rom_dir):
        _, events = scan(store, rom_dir, batch_size=1)

        progress = [e for e in events if e["event"] == "progress"]
        assert [e["processed"] for e in progress] == [1, 2]
        assert all(e["total"] == 2 for e in progress)
        assert [os.path.basename(e["path"]) for e in progress] == ["mario.nes", "zelda.zip"]
        assert all(e["is_new"] for e in progress)

    def test_rescan_is_all_cache_hits(self, store, rom_dir):
        scan(store, rom_dir)
        before = store.library_path.read_text()

        with patch("library.scanner.hash_file", wraps=hash_file) as hashed, patch(
            "library.scanner.extract_file_from_archive", wraps=extract_file_from_archive
        ) as extracted:
            records, events = scan(store, rom_dir)

        assert hashed.call_count == 0
        assert extracted.call_count == 0
        assert {r.id for r in records} == {AAAA_ID, BBBB_ID}
        assert events[-1]["cache_hits"] == 2
        assert events[-1]["added"] == 0
        assert len(store.records) == 2
        assert json.loads(store.library_path.read_text()) == json.loads(before)

    def test_collaborator_fields_survive_rescan(self, store, rom_dir):
        scan(store, rom_dir)
        run(store.update_record(BBBB_ID, {"coverArt": "/art/zelda.png", "playTime": 12}))
        touch(rom_dir / "zelda.zip")

        scan(store, rom_dir)

        record = store.get_record(BBBB_ID)
        assert record.extra == {"coverArt": "/art/zelda.png", "playTime": 12}

    def test_touched_file_with_same_content_keeps_id(self, store, rom_dir):
        scan(store, rom_dir)
        touch(rom_dir / "mario.nes")

        _, events = scan(store, rom_dir)

        assert events[-1]["cache_hits"] == 1
        assert events[-1]["added"] == 0
        record = store.get_record(AAAA_ID)
        assert record.rom_mtime == os.stat(rom_dir / "mario.nes").st_mtime

    def test_changed_content_replaces_record(self, store, rom_dir):
        scan(store, rom_dir)
        run(store.update_record(AAAA_ID, {"favorite": True}))
        (rom_dir / "mario.nes").write_bytes(b"CCCC")
        touch(rom_dir / "mario.nes")

        scan(store, rom_dir)

        new_id = hashlib.sha256(b"CCCC").hexdigest()
        assert AAAA_ID not in store.records
        assert store.get_record(new_id).extra == {"favorite": True}
        assert store.index.by_path[str(rom_dir / "mario.nes")] == new_id

    def test_changed_archive_drops_old_cache_file(self, store, rom_dir):
        scan(store, rom_dir)
        write_zip(rom_dir / "zelda.zip", {"zelda.nes": b"DDDD"})
        touch(rom_dir / "zelda.zip")

        scan(store, rom_dir)

        new_id = hashlib.sha256(b"DDDD").hexdigest()
        assert BBBB_ID not in store.records
        assert cache_files(store) == [f"{new_id[:8]}_zelda.nes"]

    def test_wiped_cache_is_extracted_again(self, store, rom_dir):
        scan(store, rom_dir)
        for path in store.cache_dir.iterdir():
            path.unlink()

        with patch(
            "library.scanner.extract_file_from_archive", wraps=extract_file_from_archive
        ) as extracted:
            _, events = scan(store, rom_dir)

        assert extracted.call_count == 1
        assert events[-1]["cache_hits"] == 1
        assert os.path.isfile(store.get_record(BBBB_ID).rom_path)

    def test_same_content_in_two_places_is_one_record(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_rom(roms / "mario.nes", b"AAAA")
        write_zip(roms / "mario.zip", {"mario.nes": b"AAAA"})
        write_zip(roms / "mario-copy.zip", {"mario.nes": b"AAAA"})

        records, events = scan(store, roms, batch_size=1)

        assert [r.id for r in records] == [AAAA_ID]
        assert list(store.records) == [AAAA_ID]
        assert events[-1]["added"] == 1
        assert events[-1]["processed"] == 3
        assert cache_files(store) == [f"{AAAA_ID[:8]}_mario.nes"]

    def test_duplicate_paths_are_cache_hits_on_rescan(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_rom(roms / "a.nes", b"AAAA")
        write_rom(roms / "b.nes", b"AAAA")
        touch(roms / "b.nes", delta=5)
        scan(store, roms)
        rom_path = store.get_record(AAAA_ID).rom_path

        with patch("library.scanner.hash_file", wraps=hash_file) as hashed:
            _, events = scan(store, roms)

        assert hashed.call_count == 0
        assert events[-1]["cache_hits"] == 2
        assert store.get_record(AAAA_ID).rom_path == rom_path
        saved = json.loads(store.library_path.read_text())
        assert saved[0]["romPath"] == rom_path
        other = {str(roms / "a.nes"), str(roms / "b.nes")} - {rom_path}
        assert set(saved[0]["duplicateSources"]) == other

    def test_moved_content_keeps_record_at_remaining_path(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_rom(roms / "a.nes", b"AAAA")
        scan(store, roms)
        run(store.update_record(AAAA_ID, {"favorite": True}))
        write_rom(roms / "b.nes", b"AAAA")
        (roms / "a.nes").write_bytes(b"CCCC")
        touch(roms / "a.nes")

        records, _ = scan(store, roms)

        new_id = hashlib.sha256(b"CCCC").hexdigest()
        kept = store.get_record(AAAA_ID)
        assert kept is not None
        assert kept.rom_path == str(roms / "b.nes")
        assert kept.extra == {"favorite": True}
        assert store.get_record(new_id).extra == {}
        assert all(r.id in store.records for r in records)
        assert store.index.by_path == {
            str(roms / "a.nes"): new_id,
            str(roms / "b.nes"): AAAA_ID,
        }

    def test_changed_source_moves_record_to_unchanged_duplicate(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_rom(roms / "a.nes", b"AAAA")
        scan(store, roms)
        write_rom(roms / "b.nes", b"AAAA")
        scan(store, roms)
        run(store.update_record(AAAA_ID, {"favorite": True}))
        assert set(store.get_record(AAAA_ID).duplicate_sources) == {str(roms / "b.nes")}

        (roms / "a.nes").write_bytes(b"CCCC")
        touch(roms / "a.nes")
        scan(store, roms)

        kept = store.get_record(AAAA_ID)
        assert kept.rom_path == str(roms / "b.nes")
        assert kept.duplicate_sources == {}
        assert kept.extra == {"favorite": True}
        assert hashlib.sha256(b"CCCC").hexdigest() in store.records

    def test_changed_duplicate_is_dropped(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_rom(roms / "a.nes", b"AAAA")
        scan(store, roms)
        write_rom(roms / "b.nes", b"AAAA")
        scan(store, roms)

        (roms / "b.nes").write_bytes(b"CCCC")
        touch(roms / "b.nes")
        scan(store, roms)

        kept = store.get_record(AAAA_ID)
        assert kept.rom_path == str(roms / "a.nes")
        assert kept.duplicate_sources == {}
        new_id = hashlib.sha256(b"CCCC").hexdigest()
        assert store.index.by_path[str(roms / "b.nes")] == new_id

    def test_same_rom_in_two_archives_shares_one_cache_file(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_zip(roms / "one.zip", {"x.nes": b"AAAA"})
        write_zip(roms / "two.zip", {"y.nes": b"AAAA"})

        scan(store, roms)

        record = store.get_record(AAAA_ID)
        assert len(cache_files(store)) == 1
        assert str(store.cache_dir / cache_files(store)[0]) == record.rom_path
        assert {d.rom_path for d in record.duplicate_sources.values()} == {
            record.rom_path
        }

        with patch(
            "library.scanner.extract_file_from_archive", wraps=extract_file_from_archive
        ) as extracted:
            _, events = scan(store, roms)
        assert extracted.call_count == 0
        assert events[-1]["cache_hits"] == 2

        run(store.remove_record(AAAA_ID))
        assert cache_files(store) == []

    def test_batches_bound_concurrency_and_run_in_order(self, store, tmp_path):
        roms = tmp_path / "roms"
        for name in "abcde":
            write_rom(roms / f"{name}.nes", name.encode() * 4)

        lock = threading.Lock()
        timeline = []
        active = [0, 0]  # current, highest

        def slow_hash(path):
            name = os.path.basename(path)
            with lock:
                active[0] += 1
                active[1] = max(active)
                timeline.append(("start", name))
            time.sleep(0.05)
            try:
                return hash_file(path)
            finally:
                with lock:
                    active[0] -= 1
                    timeline.append(("end", name))

        with patch("library.scanner.hash_file", side_effect=slow_hash):
            records, _ = scan(store, roms, batch_size=2)

        assert len(records) == 5
        assert active[1] <= 2
        batches = [["a.nes", "b.nes"], ["c.nes", "d.nes"], ["e.nes"]]
        for earlier, later in zip(batches, batches[1:]):
            last_end = max(timeline.index(("end", name)) for name in earlier)
            first_start = min(timeline.index(("start", name)) for name in later)
            assert last_end < first_start

    def test_archive_without_rom_counted_not_found(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_zip(roms / "manual.zip", {"manual.pdf": b"pdf", "inner.zip": b"PK"})

        records, events = scan(store, roms)

        assert records == []
        assert events[-1]["not_found"] == 1
        assert store.records == {}
        assert json.loads(store.library_path.read_text()) == []

    def test_first_matching_entry_wins(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_zip(
            roms / "multi.zip",
            {"readme.txt": b"txt", "Disk 2.nes": b"DISK2", "Disk 1.nes": b"DISK1"},
        )

        records, _ = scan(store, roms)

        assert [r.id for r in records] == [hashlib.sha256(b"DISK2").hexdigest()]

    def test_corrupt_files_counted_as_errors(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_rom(roms / "broken.zip", b"not a zip")
        write_rom(roms / "good.nes", b"GOOD")

        records, events = scan(store, roms)

        assert [r.id for r in records] == [hashlib.sha256(b"GOOD").hexdigest()]
        assert events[-1]["errors"] == 1
        assert events[-1]["processed"] == 2

    def test_unexpected_exception_does_not_abort_scan(self, store, rom_dir):
        original = scanner.process_candidate

        async def flaky(store, candidate):
            if candidate.path.endswith("mario.nes"):
                raise RuntimeError("boom")
            return await original(store, candidate)

        with patch("library.scanner.process_candidate", new=flaky):
            records, events = scan(store, rom_dir)

        assert [r.id for r in records] == [BBBB_ID]
        assert events[-1]["errors"] == 1

    def test_system_filter(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_rom(roms / "mario.nes", b"AAAA")
        write_rom(roms / "mario.sfc", b"SNES")
        write_zip(roms / "pack.zip", {"zelda.nes": b"BBBB", "f-zero.sfc": b"FZERO"})

        records, _ = scan(store, roms, system_id="snes")

        assert sorted(r.title for r in records) == ["mario", "pack"]
        assert all(r.system_id == "snes" for r in records)
        assert store.get_record(hashlib.sha256(b"FZERO").hexdigest()) is not None

    def test_unknown_system(self, store, rom_dir):
        records, events = scan(store, rom_dir, system_id="missing")

        assert records == []
        assert events == [
            {
                "event": "complete",
                "processed": 0,
                "added": 0,
                "not_found": 0,
                "errors": 0,
                "cache_hits": 0,
            }
        ]

    def test_folder_name_sets_system(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_rom(roms / "SNES" / "mario.sfc", b"SNES")
        write_zip(roms / "SNES" / "pack.zip", {"zelda.nes": b"BBBB", "kart.smc": b"KART"})

        records, _ = scan(store, roms)

        assert all(r.system_id == "snes" for r in records)
        assert store.get_record(hashlib.sha256(b"KART").hexdigest()) is not None
        assert store.get_record(BBBB_ID) is None

    def test_arcade_archive_is_the_rom(self, store, tmp_path):
        roms = tmp_path / "roms"
        pacman = write_zip(roms / "arcade" / "pacman.zip", {"pacman.6e": b"code"})

        records, _ = scan(store, roms)

        assert len(records) == 1
        record = records[0]
        assert record.id == hashlib.sha256(pacman.read_bytes()).hexdigest()
        assert record.rom_path == str(pacman)
        assert record.source_archive_path is None
        assert record.system_id == "arcade"
        assert not store.cache_dir.exists() or cache_files(store) == []

    def test_empty_directory_does_not_write_library(self, store, tmp_path):
        (tmp_path / "empty").mkdir()
        before = store.library_path.stat().st_mtime_ns

        records, events = scan(store, tmp_path / "empty")

        assert records == []
        assert events[-1]["processed"] == 0
        assert store.library_path.stat().st_mtime_ns == before


# -----------------------------------------------------------------------------
# Tests for candidate ordering and processing
# -----------------------------------------------------------------------------


class TestOrderCandidates:
    """Tests for order_candidates function."""

    def test_new_candidates_first(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_rom(roms / "a_known.nes", b"KNOWN")
        scan(store, roms)
        write_rom(roms / "b_new.nes", b"NEW")

        candidates = walk_directory(str(roms), store.resolver)
        ordered = order_candidates(store, candidates)

        assert [c.filename for c in ordered] == ["b_new.nes", "a_known.nes"]

    def test_progress_reports_new_first(self, store, tmp_path):
        roms = tmp_path / "roms"
        write_rom(roms / "a_known.nes", b"KNOWN")
        scan(store, roms)
        write_rom(roms / "b_new.nes", b"NEW")

        _, events = scan(store, roms, batch_size=1)

        progress = [e for e in events if e["event"] == "progress"]
        assert [os.path.basename(e["path"]) for e in progress] == ["b_new.nes", "a_known.nes"]
        assert [e["is_new"] for e in progress] == [True, False]


class TestProcessCandidate:
    """Tests for process_candidate function."""

    def test_statuses(self, store, rom_dir):
        write_zip(rom_dir / "docs.zip", {"manual.pdf": b"pdf"})
        candidates = {
            c.filename: c for c in walk_directory(str(rom_dir), store.resolver)
        }

        first = run(process_candidate(store, candidates["mario.nes"]))
        assert first.status == STATUS_INDEXED
        assert first.is_new is True

        store.rebuild_indices()
        again = run(process_candidate(store, candidates["mario.nes"]))
        assert again.status == STATUS_CACHE_HIT
        assert again.record is first.record

        assert run(process_candidate(store, candidates["docs.zip"])).status == STATUS_NOT_FOUND

    def test_vanished_file_is_error(self, store, rom_dir):
        candidate = next(
            c for c in walk_directory(str(rom_dir), store.resolver)
            if c.filename == "mario.nes"
        )
        os.unlink(candidate.path)

        result = run(process_candidate(store, candidate))

        assert result.status == STATUS_ERROR
        assert result.record is None


# -----------------------------------------------------------------------------
# Tests for scan_system_folders and add_rom
# -----------------------------------------------------------------------------


class TestScanSystemFolders:
    """Tests for scan_system_folders function."""

    def test_scans_configured_folders(self, store, tmp_path):
        nes_dir = tmp_path / "nes"
        write_rom(nes_dir / "mario.nes", b"AAAA")
        # Files of other systems in a system folder are ignored
        write_rom(nes_dir / "mario.sfc", b"SNES")
        run(store.update_system_path("nes", str(nes_dir)))
        run(store.update_system_path("snes", str(tmp_path / "missing")))

        records = run(scan_system_folders(store))

        assert [r.id for r in records] == [AAAA_ID]

    def test_no_folders_configured(self, store):
        assert run(scan_system_folders(store)) == []


class TestAddRom:
    """Tests for add_rom function."""

    def test_adds_and_saves(self, store, rom_dir):
        record = run(add_rom(store, str(rom_dir / "mario.nes"), "nes"))

        assert record.id == AAAA_ID
        assert record.system == "Nintendo Entertainment System"
        assert store.index.by_path == {str(rom_dir / "mario.nes"): AAAA_ID}
        saved = json.loads(store.library_path.read_text())
        assert [r["id"] for r in saved] == [AAAA_ID]

    @pytest.mark.parametrize(
        "filename,system_id",
        [
            ("mario.nes", "missing"),  # Unknown system
            ("mario.nes", "snes"),  # Extension not valid for system
            ("gone.nes", "nes"),  # Unreadable file
        ],
    )
    def test_rejected(self, store, rom_dir, filename, system_id):
        assert run(add_rom(store, str(rom_dir / filename), system_id)) is None
        assert store.records == {}

    def test_adding_twice_keeps_one_record(self, store, rom_dir):
        run(add_rom(store, str(rom_dir / "mario.nes"), "nes"))
        run(store.update_record(AAAA_ID, {"favorite": True}))

        record = run(add_rom(store, str(rom_dir / "mario.nes"), "nes"))

        assert len(store.records) == 1
        assert record.extra == {"favorite": True}
