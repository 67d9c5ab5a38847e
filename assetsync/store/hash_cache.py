from __future__ import annotations

import logging
import sqlite3
from typing import Iterable, Mapping, Optional

from assetsync.core.models import (
    PRIMARY_RESOURCE_TYPES,
    HashCacheRecord,
    HashResult,
    PresenceUpdate,
    ResourceType,
    SyncStatus,
    is_fully_on_server,
)

from .db import Database, now_ts

logger = logging.getLogger("database")

# SQLite's default host parameter limit is 999 on older builds.
IN_CLAUSE_CHUNK = 500

_UPSERT_SQL = """
INSERT INTO hash_cache (
    asset_id, primary_hash, primary_file_size, raw_hash, raw_file_size, has_raw,
    primary_on_server, raw_on_server, calculated_at
) VALUES (?,?,?,?,?,?,0,0,?)
ON CONFLICT(asset_id) DO UPDATE SET
    primary_on_server = CASE WHEN hash_cache.primary_hash = excluded.primary_hash
                             THEN hash_cache.primary_on_server ELSE 0 END,
    raw_on_server = CASE WHEN excluded.has_raw = 1 AND hash_cache.raw_hash IS excluded.raw_hash
                         THEN hash_cache.raw_on_server ELSE 0 END,
    primary_hash = excluded.primary_hash,
    primary_file_size = excluded.primary_file_size,
    raw_hash = excluded.raw_hash,
    raw_file_size = excluded.raw_file_size,
    has_raw = excluded.has_raw,
    calculated_at = excluded.calculated_at
"""

_PRESENCE_SQL = """
UPDATE hash_cache
   SET primary_on_server=?,
       raw_on_server=CASE WHEN has_raw=1 THEN ? ELSE 0 END,
       checked_at=?
 WHERE asset_id=?
"""


def _chunks(items: list, size: int = IN_CLAUSE_CHUNK):
    for start in range(0, len(items), size):
        yield items[start:start + size]


def _row_to_record(row: sqlite3.Row) -> HashCacheRecord:
    return HashCacheRecord(
        asset_id=row["asset_id"],
        primary_hash=row["primary_hash"],
        primary_file_size=int(row["primary_file_size"] or 0),
        raw_hash=row["raw_hash"],
        raw_file_size=row["raw_file_size"],
        has_raw=bool(row["has_raw"]),
        primary_on_server=bool(row["primary_on_server"]),
        raw_on_server=bool(row["raw_on_server"]),
        calculated_at=float(row["calculated_at"]),
        checked_at=row["checked_at"],
    )


def _upsert_params(item: HashResult, ts: float) -> tuple:
    # has_raw=False must never carry RAW state.
    raw_hash = item.raw_hash if item.has_raw else None
    raw_size = item.raw_file_size if item.has_raw else None
    return (
        item.asset_id,
        item.primary_hash,
        int(item.primary_file_size or 0),
        raw_hash,
        raw_size,
        1 if item.has_raw else 0,
        ts,
    )


class HashCacheStore:
    def __init__(self, db: Database):
        self.db = db

    # -- writes ---------------------------------------------------------

    def upsert_multi_resource_hash(
        self,
        asset_id: str,
        primary_hash: str,
        primary_size: int,
        raw_hash: Optional[str] = None,
        raw_size: Optional[int] = None,
        has_raw: bool = False,
    ) -> None:
        item = HashResult(
            asset_id=asset_id,
            primary_hash=primary_hash,
            primary_file_size=primary_size,
            raw_hash=raw_hash,
            raw_file_size=raw_size,
            has_raw=has_raw,
        )
        self.batch_upsert([item])

    def batch_upsert(self, items: Iterable[HashResult]) -> int:
        rows = list(items)
        if not rows:
            return 0
        ts = now_ts()
        with self.db.transaction("hash_cache.batch_upsert") as conn:
            conn.executemany(_UPSERT_SQL, [_upsert_params(item, ts) for item in rows])
        return len(rows)

    def batch_upsert_on_server(self, items: Iterable[HashResult]) -> int:
        """Insert records already known to be remote (cloud id matches) with primary_on_server set."""
        rows = list(items)
        if not rows:
            return 0
        ts = now_ts()
        with self.db.transaction("hash_cache.batch_upsert_on_server") as conn:
            conn.executemany(_UPSERT_SQL, [_upsert_params(item, ts) for item in rows])
            conn.executemany(_PRESENCE_SQL, [(1, 0, ts, item.asset_id) for item in rows])
        return len(rows)

    def update_presence_flags(self, asset_id: str, primary_on_server: bool, raw_on_server: bool) -> None:
        self.batch_update_presence(
            [PresenceUpdate(asset_id=asset_id, primary_on_server=primary_on_server, raw_on_server=raw_on_server)]
        )

    def batch_update_presence(self, items: Iterable[PresenceUpdate]) -> int:
        rows = list(items)
        if not rows:
            return 0
        ts = now_ts()
        with self.db.transaction("hash_cache.batch_update_presence") as conn:
            conn.executemany(
                _PRESENCE_SQL,
                [
                    (1 if item.primary_on_server else 0, 1 if item.raw_on_server else 0, ts, item.asset_id)
                    for item in rows
                ],
            )
        return len(rows)

    def mark_resource_on_server(self, conn: sqlite3.Connection, asset_id: str, resource_type: str, ts: float) -> None:
        """Flip the presence flag matching an uploaded resource; runs inside the caller's transaction."""
        if resource_type == ResourceType.RAW.value:
            conn.execute(
                "UPDATE hash_cache SET raw_on_server=1, checked_at=? WHERE asset_id=? AND has_raw=1",
                (ts, asset_id),
            )
        else:
            conn.execute(
                "UPDATE hash_cache SET primary_on_server=1, checked_at=? WHERE asset_id=?",
                (ts, asset_id),
            )

    def delete_orphans(self, asset_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(asset_ids))
        if not ids:
            return 0
        deleted = 0
        with self.db.transaction("hash_cache.delete_orphans") as conn:
            for chunk in _chunks(ids):
                placeholders = ",".join("?" for _ in chunk)
                cur = conn.execute(f"DELETE FROM hash_cache WHERE asset_id IN ({placeholders})", chunk)
                deleted += cur.rowcount
        logger.info("hash_cache_orphans_deleted count=%s", deleted)
        return deleted

    def clear(self) -> None:
        with self.db.transaction("hash_cache.clear") as conn:
            conn.execute("DELETE FROM hash_cache")
        logger.info("hash_cache_cleared")

    # -- reads ----------------------------------------------------------

    def get(self, asset_id: str) -> Optional[HashCacheRecord]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM hash_cache WHERE asset_id=?", (asset_id,)).fetchone()
        return _row_to_record(row) if row else None

    def all_ids(self) -> set[str]:
        with self.db.read() as conn:
            rows = conn.execute("SELECT asset_id FROM hash_cache").fetchall()
        return {r["asset_id"] for r in rows}

    def assets_needing_hash(self, candidate_ids: Iterable[str]) -> list[str]:
        existing = self.all_ids()
        return [asset_id for asset_id in dict.fromkeys(candidate_ids) if asset_id not in existing]

    def records_not_fully_on_server(self) -> list[HashCacheRecord]:
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT * FROM hash_cache
                 WHERE primary_on_server = 0 OR (has_raw = 1 AND raw_on_server = 0)
                 ORDER BY id
                """
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def all_sync_status(
        self,
        uploaded_types: Mapping[str, set[str]],
        has_server_cache: bool,
    ) -> dict[str, SyncStatus]:
        """Status projection of every cached asset, as persisted.

        Unchecked rows are ``pending`` while a server index exists (a check will
        settle them) and ``not_uploaded`` when there is nothing to check against.
        """
        with self.db.read() as conn:
            rows = conn.execute(
                "SELECT asset_id, primary_on_server, raw_on_server, has_raw, checked_at FROM hash_cache"
            ).fetchall()

        out: dict[str, SyncStatus] = {}
        for row in rows:
            asset_id = row["asset_id"]
            types = uploaded_types.get(asset_id) or set()
            primary = bool(row["primary_on_server"]) or bool(types & PRIMARY_RESOURCE_TYPES)
            raw = bool(row["raw_on_server"]) or ResourceType.RAW.value in types
            if is_fully_on_server(bool(row["has_raw"]), primary, raw):
                out[asset_id] = SyncStatus.UPLOADED
            elif row["checked_at"] is not None:
                out[asset_id] = SyncStatus.NOT_UPLOADED
            elif has_server_cache:
                out[asset_id] = SyncStatus.PENDING
            else:
                out[asset_id] = SyncStatus.NOT_UPLOADED
        return out

    def stats(self) -> dict[str, int]:
        with self.db.read() as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       SUM(CASE WHEN checked_at IS NOT NULL THEN 1 ELSE 0 END) AS checked,
                       SUM(CASE WHEN primary_on_server = 1 THEN 1 ELSE 0 END) AS primary_on_server,
                       SUM(CASE WHEN has_raw = 1 THEN 1 ELSE 0 END) AS with_raw
                  FROM hash_cache
                """
            ).fetchone()
        return {
            "total": int(row["total"] or 0),
            "checked": int(row["checked"] or 0),
            "primary_on_server": int(row["primary_on_server"] or 0),
            "with_raw": int(row["with_raw"] or 0),
        }
