from __future__ import annotations

import logging
from typing import Iterable, Optional

from assetsync.core.models import ServerAssetIndexRecord, SyncMetadata, SyncType

from .db import Database, now_ts
from .hash_cache import _chunks

logger = logging.getLogger("database")

_UPSERT_SQL = """
INSERT OR REPLACE INTO server_assets_cache
(remote_id, checksum, original_filename, asset_type, updated_at, cloud_id, synced_at)
VALUES (?,?,?,?,?,?,?)
"""

_DELETE_SQL = "DELETE FROM server_assets_cache WHERE remote_id IN ({placeholders})"


def _params(record: ServerAssetIndexRecord, ts: float) -> tuple:
    return (
        record.remote_id,
        record.checksum,
        record.original_filename,
        record.asset_type,
        record.updated_at,
        record.cloud_id,
        ts,
    )


class ServerIndexStore:
    """Local mirror of remote checksums; written only by the remote sync client."""

    def __init__(self, db: Database):
        self.db = db

    def replace_all(self, records: Iterable[ServerAssetIndexRecord]) -> int:
        rows = list(records)
        ts = now_ts()
        with self.db.transaction("server_assets_cache.replace_all") as conn:
            conn.execute("DELETE FROM server_assets_cache")
            conn.executemany(_UPSERT_SQL, [_params(r, ts) for r in rows])
        logger.info("server_assets_replaced count=%s", len(rows))
        return len(rows)

    def upsert(self, records: Iterable[ServerAssetIndexRecord]) -> int:
        rows = list(records)
        if not rows:
            return 0
        ts = now_ts()
        with self.db.transaction("server_assets_cache.upsert") as conn:
            conn.executemany(_UPSERT_SQL, [_params(r, ts) for r in rows])
        logger.info("server_assets_upserted count=%s", len(rows))
        return len(rows)

    def delete(self, remote_ids: Iterable[str]) -> int:
        ids = list(dict.fromkeys(remote_ids))
        if not ids:
            return 0
        deleted = 0
        with self.db.transaction("server_assets_cache.delete") as conn:
            for chunk in _chunks(ids):
                placeholders = ",".join("?" for _ in chunk)
                cur = conn.execute(_DELETE_SQL.format(placeholders=placeholders), chunk)
                deleted += cur.rowcount
        logger.info("server_assets_deleted requested=%s deleted=%s", len(ids), deleted)
        return deleted

    def apply_delta(
        self,
        records: Iterable[ServerAssetIndexRecord],
        remote_ids: Iterable[str],
    ) -> tuple[int, int]:
        """Merge upserts and purge deletions in one transaction; returns (upserted, deleted)."""
        rows = list(records)
        ids = list(dict.fromkeys(remote_ids))
        ts = now_ts()
        deleted = 0
        with self.db.transaction("server_assets_cache.apply_delta") as conn:
            if rows:
                conn.executemany(_UPSERT_SQL, [_params(r, ts) for r in rows])
            for chunk in _chunks(ids):
                placeholders = ",".join("?" for _ in chunk)
                cur = conn.execute(_DELETE_SQL.format(placeholders=placeholders), chunk)
                deleted += cur.rowcount
        logger.info("server_assets_delta_applied upserted=%s deleted=%s", len(rows), deleted)
        return len(rows), deleted

    def clear(self) -> None:
        """Drop the mirror and its bookkeeping so the next sync is a full one."""
        with self.db.transaction("server_assets_cache.clear") as conn:
            conn.execute("DELETE FROM server_assets_cache")
            conn.execute("DELETE FROM sync_metadata")
        logger.info("server_assets_cache_cleared")

    def contains_checksum(self, checksum: str) -> bool:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT 1 FROM server_assets_cache WHERE checksum=? LIMIT 1",
                ((checksum or "").lower(),),
            ).fetchone()
        return row is not None

    def get_by_checksum(self, checksum: str) -> Optional[ServerAssetIndexRecord]:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM server_assets_cache WHERE checksum=? LIMIT 1",
                ((checksum or "").lower(),),
            ).fetchone()
        if not row:
            return None
        return ServerAssetIndexRecord(
            remote_id=row["remote_id"],
            checksum=row["checksum"],
            original_filename=row["original_filename"],
            asset_type=row["asset_type"],
            updated_at=row["updated_at"],
            cloud_id=row["cloud_id"],
        )

    def count(self) -> int:
        with self.db.read() as conn:
            row = conn.execute("SELECT COUNT(*) FROM server_assets_cache").fetchone()
        return int(row[0] or 0)

    def has_cache(self) -> bool:
        with self.db.read() as conn:
            row = conn.execute("SELECT 1 FROM server_assets_cache LIMIT 1").fetchone()
        return row is not None

    def has_cloud_ids(self) -> bool:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT 1 FROM server_assets_cache WHERE cloud_id IS NOT NULL AND cloud_id != '' LIMIT 1"
            ).fetchone()
        return row is not None

    def checksums_by_cloud_ids(self, cloud_ids: Iterable[str]) -> dict[str, str]:
        ids = [c for c in dict.fromkeys(cloud_ids) if c]
        out: dict[str, str] = {}
        if not ids:
            return out
        with self.db.read() as conn:
            for chunk in _chunks(ids):
                placeholders = ",".join("?" for _ in chunk)
                rows = conn.execute(
                    f"SELECT cloud_id, checksum FROM server_assets_cache WHERE cloud_id IN ({placeholders})",
                    chunk,
                ).fetchall()
                for row in rows:
                    out[row["cloud_id"]] = row["checksum"]
        return out

    # -- sync bookkeeping ------------------------------------------------

    def save_sync_metadata(self, last_sync_time: float, sync_type: SyncType, remote_user_id: str, total_assets: int) -> None:
        with self.db.transaction("sync_metadata.save") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO sync_metadata (id, last_sync_time, last_sync_type, remote_user_id, total_assets)
                VALUES (1,?,?,?,?)
                """,
                (float(last_sync_time), SyncType(sync_type).value, remote_user_id, int(total_assets)),
            )

    def get_sync_metadata(self) -> Optional[SyncMetadata]:
        with self.db.read() as conn:
            row = conn.execute("SELECT * FROM sync_metadata WHERE id=1").fetchone()
        if not row:
            return None
        return SyncMetadata(
            last_sync_time=row["last_sync_time"],
            last_sync_type=SyncType(row["last_sync_type"]) if row["last_sync_type"] else None,
            remote_user_id=row["remote_user_id"],
            total_assets=int(row["total_assets"] or 0),
        )
