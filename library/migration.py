"""One-time upgrades applied to a library when it is opened.

Older library files keyed records by the MD5 of their ROM path and stored at
most an MD5 fingerprint. Opening such a library re-keys every record by the
SHA-256 of its ROM bytes and fills in the missing CRC32/SHA-1/MD5 values.
Both passes are idempotent: a migrated library has nothing left to do.
"""

import asyncio
import logging

from .hashing import UnreadableSourceError, hash_file, is_legacy_id

logger = logging.getLogger(__name__)


async def migrate_legacy_ids(store) -> int:
    """
    Re-key records that still use a 32-hex-character id.

    Each legacy record is rehashed from its ROM path. Records whose ROM can
    no longer be read are dropped. When the new id is already taken, the
    first record in library order is kept and the other one only contributes
    collaborator fields the kept record lacks.

    Args:
        store: LibraryStore whose records are migrated in place

    Returns:
        Number of records re-keyed, merged or dropped
    """
    changed = 0
    migrated = {}

    for record in list(store.records.values()):
        if is_legacy_id(record.id):
            old_id = record.id
            try:
                content = await asyncio.to_thread(hash_file, record.rom_path)
            except UnreadableSourceError as e:
                logger.warning("Dropped legacy record %s (%s): %s", old_id, record, e)
                changed += 1
                continue

            record.id = content.id
            record.rom_hashes = content.rom_hashes
            changed += 1
            logger.info("Migrated record id %s -> %s", old_id, content.id)

        existing = migrated.get(record.id)
        if existing is not None:
            for key, value in record.extra.items():
                existing.extra.setdefault(key, value)
            logger.info("Merged duplicate record %s (%s)", record.id, record)
            continue

        migrated[record.id] = record

    if changed:
        store.records = migrated
    return changed


async def backfill_rom_hashes(store) -> int:
    """
    Compute CRC32, SHA-1 and MD5 for records missing any of them.

    Records whose ROM can no longer be read are dropped.

    Returns:
        Number of records updated or dropped
    """
    changed = 0

    for record in list(store.records.values()):
        if record.has_complete_hashes:
            continue

        try:
            content = await asyncio.to_thread(hash_file, record.rom_path)
        except UnreadableSourceError as e:
            logger.warning("Dropped record %s (%s): %s", record.id, record, e)
            del store.records[record.id]
            changed += 1
            continue

        if content.id != record.id:
            logger.warning(
                "ROM for %s changed since it was indexed: %s", record.id, record.rom_path
            )
        record.rom_hashes = content.rom_hashes
        changed += 1

    if changed:
        logger.info("Backfilled ROM hashes for %d records", changed)
    return changed


async def run_migrations(store) -> int:
    """Run every migration pass and save the library if anything changed."""
    changed = await migrate_legacy_ids(store)
    changed += await backfill_rom_hashes(store)

    if changed:
        store.rebuild_indices()
        await store.save()
    return changed
