from __future__ import annotations

import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from assetsync.core.errors import StoreWriteFailed

logger = logging.getLogger("database")

BUSY_TIMEOUT_MS = 30_000


def now_ts() -> float:
    return time.time()


def get_conn(db_path: str):
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=BUSY_TIMEOUT_MS / 1000, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    return conn


def init_db(db_path: str):
    conn = get_conn(db_path)
    cur = conn.cursor()

    # WAL lets readers proceed while a writer transaction is open.
    cur.execute("PRAGMA journal_mode=WAL")

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS hash_cache (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          asset_id TEXT NOT NULL UNIQUE,
          primary_hash TEXT NOT NULL,
          primary_file_size INTEGER DEFAULT 0,
          raw_hash TEXT,
          raw_file_size INTEGER,
          has_raw INTEGER DEFAULT 0,
          primary_on_server INTEGER DEFAULT 0,
          raw_on_server INTEGER DEFAULT 0,
          calculated_at REAL NOT NULL,
          checked_at REAL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS upload_jobs (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          asset_id TEXT NOT NULL,
          resource_type TEXT NOT NULL,
          filename TEXT NOT NULL,
          status TEXT DEFAULT 'pending',
          remote_id TEXT,
          error_message TEXT,
          retry_count INTEGER DEFAULT 0,
          created_at REAL NOT NULL,
          updated_at REAL NOT NULL,
          UNIQUE(asset_id, resource_type)
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS uploaded_assets (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          asset_id TEXT NOT NULL,
          resource_type TEXT NOT NULL,
          filename TEXT NOT NULL,
          remote_id TEXT NOT NULL,
          file_size INTEGER,
          is_duplicate INTEGER DEFAULT 0,
          is_favorite INTEGER DEFAULT 0,
          uploaded_at REAL NOT NULL,
          UNIQUE(asset_id, resource_type)
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS server_assets_cache (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          remote_id TEXT NOT NULL UNIQUE,
          checksum TEXT NOT NULL,
          original_filename TEXT,
          asset_type TEXT,
          updated_at TEXT,
          cloud_id TEXT,
          synced_at REAL NOT NULL
        )
        """
    )

    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_metadata (
          id INTEGER PRIMARY KEY CHECK (id = 1),
          last_sync_time REAL,
          last_sync_type TEXT,
          remote_user_id TEXT,
          total_assets INTEGER DEFAULT 0
        )
        """
    )

    cur.execute("CREATE INDEX IF NOT EXISTS idx_hash_primary_on_server ON hash_cache(primary_on_server)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON upload_jobs(status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_jobs_asset ON upload_jobs(asset_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_uploaded_asset ON uploaded_assets(asset_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_server_cache_checksum ON server_assets_cache(checksum)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_server_cache_cloud_id ON server_assets_cache(cloud_id)")

    conn.commit()
    conn.close()


class Database:
    """Connection factory plus the single writer queue for one database file.

    Every write transaction, whichever store issues it, runs under
    ``_write_lock`` so batched writes never interleave at the row level.
    Reads open their own connection and rely on WAL isolation.
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._write_lock = threading.Lock()
        init_db(db_path)

    @contextmanager
    def read(self) -> Iterator[sqlite3.Connection]:
        conn = get_conn(self.db_path)
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self, label: str) -> Iterator[sqlite3.Connection]:
        """All-or-nothing write; any failure rolls back and raises StoreWriteFailed."""
        with self._write_lock:
            conn = get_conn(self.db_path)
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                logger.error("transaction_failed label=%s error=%s", label, e)
                raise StoreWriteFailed(f"{label}: {e}") from e
            except BaseException:
                conn.rollback()
                raise
            finally:
                conn.close()

    def table_names(self) -> list[str]:
        with self.read() as conn:
            rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name").fetchall()
        return [r[0] for r in rows if not r[0].startswith("sqlite_")]
