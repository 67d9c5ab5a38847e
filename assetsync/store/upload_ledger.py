from __future__ import annotations

import logging
import sqlite3
from typing import Iterable, Optional

from assetsync.core.models import (
    UploadedAssetRecord,
    UploadJobRecord,
    UploadJobStatus,
)

from .db import Database, now_ts
from .hash_cache import HashCacheStore

logger = logging.getLogger("database")

_ATTEMPT_SQL = """
INSERT INTO upload_jobs (asset_id, resource_type, filename, status, created_at, updated_at)
VALUES (?,?,?,?,?,?)
ON CONFLICT(asset_id, resource_type) DO UPDATE SET
    status = excluded.status,
    filename = excluded.filename,
    updated_at = excluded.updated_at
WHERE upload_jobs.status != 'completed'
"""


def _job_from_row(row: sqlite3.Row) -> UploadJobRecord:
    return UploadJobRecord(
        asset_id=row["asset_id"],
        resource_type=row["resource_type"],
        filename=row["filename"],
        status=UploadJobStatus(row["status"]),
        retry_count=int(row["retry_count"] or 0),
        remote_id=row["remote_id"],
        error_message=row["error_message"],
        created_at=float(row["created_at"]),
        updated_at=float(row["updated_at"]),
    )


def _uploaded_from_row(row: sqlite3.Row) -> UploadedAssetRecord:
    return UploadedAssetRecord(
        asset_id=row["asset_id"],
        resource_type=row["resource_type"],
        filename=row["filename"],
        remote_id=row["remote_id"],
        file_size=int(row["file_size"] or 0),
        is_duplicate=bool(row["is_duplicate"]),
        is_favorite=bool(row["is_favorite"]),
        uploaded_at=float(row["uploaded_at"]),
    )


class UploadLedger:
    """Per-(asset, resource type) upload attempts and confirmed uploads."""

    def __init__(self, db: Database, hash_cache: HashCacheStore):
        self.db = db
        self.hash_cache = hash_cache

    # -- jobs -----------------------------------------------------------

    def record_attempt(
        self,
        asset_id: str,
        resource_type: str,
        filename: str,
        status: UploadJobStatus = UploadJobStatus.PENDING,
    ) -> None:
        ts = now_ts()
        with self.db.transaction("upload_jobs.record_attempt") as conn:
            conn.execute(
                _ATTEMPT_SQL,
                (asset_id, resource_type, filename, UploadJobStatus(status).value, ts, ts),
            )

    def record_result(
        self,
        asset_id: str,
        resource_type: str,
        filename: str,
        remote_id: str,
        file_size: int = 0,
        is_duplicate: bool = False,
        is_favorite: bool = False,
    ) -> None:
        logger.debug(
            "record_uploaded_asset filename=%s type=%s remote_id=%s duplicate=%s favorite=%s",
            filename,
            resource_type,
            remote_id,
            is_duplicate,
            is_favorite,
        )
        ts = now_ts()
        with self.db.transaction("uploaded_assets.record_result") as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO uploaded_assets
                (asset_id, resource_type, filename, remote_id, file_size, is_duplicate, is_favorite, uploaded_at)
                VALUES (?,?,?,?,?,?,?,?)
                """,
                (
                    asset_id,
                    resource_type,
                    filename,
                    remote_id,
                    int(file_size or 0),
                    1 if is_duplicate else 0,
                    1 if is_favorite else 0,
                    ts,
                ),
            )
            conn.execute(
                """
                INSERT INTO upload_jobs (asset_id, resource_type, filename, status, remote_id, created_at, updated_at)
                VALUES (?,?,?,'completed',?,?,?)
                ON CONFLICT(asset_id, resource_type) DO UPDATE SET
                    status='completed', remote_id=excluded.remote_id,
                    error_message=NULL, updated_at=excluded.updated_at
                """,
                (asset_id, resource_type, filename, remote_id, ts, ts),
            )
            # Saves the next presence check a lookup for something we just uploaded.
            self.hash_cache.mark_resource_on_server(conn, asset_id, resource_type, ts)

    def mark_failed(self, asset_id: str, resource_type: str, error_message: str) -> None:
        ts = now_ts()
        with self.db.transaction("upload_jobs.mark_failed") as conn:
            conn.execute(
                """
                UPDATE upload_jobs
                   SET status='failed', retry_count=retry_count + 1, error_message=?, updated_at=?
                 WHERE asset_id=? AND resource_type=? AND status != 'completed'
                """,
                (error_message, ts, asset_id, resource_type),
            )

    def get_job(self, asset_id: str, resource_type: str) -> Optional[UploadJobRecord]:
        with self.db.read() as conn:
            row = conn.execute(
                "SELECT * FROM upload_jobs WHERE asset_id=? AND resource_type=?",
                (asset_id, resource_type),
            ).fetchone()
        return _job_from_row(row) if row else None

    def retryable_jobs(self, limit: int = 100, max_retries: Optional[int] = None) -> list[UploadJobRecord]:
        """Jobs that never completed, oldest first.

        ``uploading`` rows are included: one left behind by a crash or a hard
        stop looks the same as one in flight, so callers skip what they own.
        """
        sql = "SELECT * FROM upload_jobs WHERE status IN ('pending', 'failed', 'uploading')"
        params: list = []
        if max_retries is not None:
            sql += " AND retry_count < ?"
            params.append(int(max_retries))
        sql += " ORDER BY created_at ASC LIMIT ?"
        params.append(int(limit))
        with self.db.read() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_job_from_row(r) for r in rows]

    def purge_completed_jobs(self) -> int:
        with self.db.transaction("upload_jobs.purge_completed") as conn:
            cur = conn.execute("DELETE FROM upload_jobs WHERE status='completed'")
            purged = cur.rowcount
        logger.info("upload_jobs_purged count=%s", purged)
        return purged

    def job_counts(self) -> dict[str, int]:
        with self.db.read() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS n FROM upload_jobs GROUP BY status").fetchall()
        out = {status.value: 0 for status in UploadJobStatus}
        for row in rows:
            out[row["status"]] = int(row["n"])
        return out

    # -- confirmed uploads ----------------------------------------------

    def is_uploaded(self, asset_id: str, resource_types: Iterable[str]) -> bool:
        types = list(resource_types)
        if not types:
            return False
        placeholders = ",".join("?" for _ in types)
        with self.db.read() as conn:
            row = conn.execute(
                f"SELECT 1 FROM uploaded_assets WHERE asset_id=? AND resource_type IN ({placeholders}) LIMIT 1",
                (asset_id, *types),
            ).fetchone()
        return row is not None

    def uploaded_records(self, asset_id: str) -> list[UploadedAssetRecord]:
        with self.db.read() as conn:
            rows = conn.execute("SELECT * FROM uploaded_assets WHERE asset_id=?", (asset_id,)).fetchall()
        return [_uploaded_from_row(r) for r in rows]

    def uploaded_resource_types(self) -> dict[str, set[str]]:
        with self.db.read() as conn:
            rows = conn.execute("SELECT asset_id, resource_type FROM uploaded_assets WHERE asset_id != ''").fetchall()
        out: dict[str, set[str]] = {}
        for row in rows:
            out.setdefault(row["asset_id"], set()).add(row["resource_type"])
        return out

    def uploaded_count(self) -> int:
        with self.db.read() as conn:
            row = conn.execute("SELECT COUNT(DISTINCT asset_id) FROM uploaded_assets").fetchone()
        return int(row[0] or 0)

    def uploaded_resource_count(self) -> int:
        with self.db.read() as conn:
            row = conn.execute("SELECT COUNT(*) FROM uploaded_assets").fetchone()
        return int(row[0] or 0)

    def uploaded_primary_mappings(self) -> list[tuple[str, str]]:
        """(local asset id, remote id) for every uploaded primary resource."""
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT asset_id, remote_id FROM uploaded_assets
                 WHERE asset_id != '' AND remote_id != '' AND resource_type IN ('primary', 'video')
                """
            ).fetchall()
        return [(r["asset_id"], r["remote_id"]) for r in rows]

    def favorite_states(self) -> list[tuple[str, str, bool]]:
        """(local asset id, remote id, stored favorite) for uploaded primaries."""
        with self.db.read() as conn:
            rows = conn.execute(
                """
                SELECT asset_id, remote_id, is_favorite FROM uploaded_assets
                 WHERE remote_id != '' AND resource_type IN ('primary', 'video')
                """
            ).fetchall()
        return [(r["asset_id"], r["remote_id"], bool(r["is_favorite"])) for r in rows]

    def batch_update_favorite(self, updates: Iterable[tuple[str, bool]]) -> int:
        rows = [(1 if fav else 0, asset_id) for asset_id, fav in updates]
        if not rows:
            return 0
        with self.db.transaction("uploaded_assets.batch_update_favorite") as conn:
            conn.executemany("UPDATE uploaded_assets SET is_favorite=? WHERE asset_id=?", rows)
        return len(rows)

    def clear(self) -> None:
        with self.db.transaction("upload_ledger.clear") as conn:
            conn.execute("DELETE FROM uploaded_assets")
            conn.execute("DELETE FROM upload_jobs")
        logger.info("upload_ledger_cleared")
