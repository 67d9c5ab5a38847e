from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Iterable, Optional

from pydantic import BaseModel

from assetsync.core.errors import NeedsFullSyncFallback, RemoteSyncFailed, StoreWriteFailed
from assetsync.core.models import ServerAssetIndexRecord, SyncType
from assetsync.store.server_index import ServerIndexStore

from .models import ServerAsset

logger = logging.getLogger("sync")

DEFAULT_PAGE_SIZE = 10_000


def checksum_to_hex(value: str) -> Optional[str]:
    """Base64 checksum as served by Immich -> lowercase hex; ``None`` if undecodable."""
    text = (value or "").strip()
    if not text:
        return None
    try:
        raw = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None
    if not raw:
        return None
    return raw.hex()


class SyncResult(BaseModel):
    sync_type: SyncType
    total_assets: int = 0
    upserted_count: int = 0
    deleted_count: int = 0
    needs_full_sync: bool = False
    skipped_checksums: int = 0


def _convert(assets: Iterable[ServerAsset]) -> tuple[list[ServerAssetIndexRecord], int]:
    records: list[ServerAssetIndexRecord] = []
    skipped = 0
    for asset in assets:
        hex_checksum = checksum_to_hex(asset.checksum)
        if hex_checksum is None:
            skipped += 1
            logger.warning("checksum_convert_failed remote_id=%s checksum=%s", asset.id, asset.checksum)
            continue
        records.append(
            ServerAssetIndexRecord(
                remote_id=asset.id,
                checksum=hex_checksum,
                original_filename=asset.original_file_name,
                asset_type=asset.type,
                updated_at=asset.updated_at,
                cloud_id=asset.cloud_id,
            )
        )
    if skipped:
        logger.warning("checksum_convert_skipped count=%s", skipped)
    return records, skipped


class RemoteSyncClient:
    """Keeps the local server index in step with the remote asset listing.

    The transport is anything with the ``ImmichClient`` sync methods. Only
    one sync runs at a time; a call that finds one already running returns
    ``None`` immediately.
    """

    def __init__(self, client, server_index: ServerIndexStore, page_size: int = DEFAULT_PAGE_SIZE):
        self.client = client
        self.server_index = server_index
        self.page_size = page_size
        self._lock = threading.Lock()

    @property
    def is_syncing(self) -> bool:
        return self._lock.locked()

    async def sync(self, force_full: bool = False) -> Optional[SyncResult]:
        if not self._lock.acquire(blocking=False):
            logger.warning("server_sync_skipped reason=sync_busy")
            return None
        try:
            return await asyncio.to_thread(self._run, force_full)
        finally:
            self._lock.release()

    def _run(self, force_full: bool) -> SyncResult:
        started_at = time.time()
        logger.info("server_sync_start force_full=%s", force_full)
        try:
            user = self.client.get_current_user()
            user_ids = [user.id] + self._partner_ids()

            meta = self.server_index.get_sync_metadata()
            use_delta = not force_full and meta is not None and meta.last_sync_time is not None

            if use_delta:
                try:
                    result = self._delta_sync(user_ids, meta.last_sync_time)
                except NeedsFullSyncFallback:
                    logger.info("delta_sync_needs_full_sync falling_back=full")
                    result = self._full_sync(user.id)
                    result.needs_full_sync = True
            else:
                result = self._full_sync(user.id)

            self.server_index.save_sync_metadata(
                last_sync_time=started_at,
                sync_type=result.sync_type,
                remote_user_id=user.id,
                total_assets=result.total_assets,
            )
        except (RemoteSyncFailed, StoreWriteFailed):
            raise
        except Exception as e:
            logger.error("server_sync_failed error=%s", e)
            raise RemoteSyncFailed(str(e)) from e

        logger.info(
            "server_sync_done type=%s total=%s upserted=%s deleted=%s skipped=%s elapsed=%.1fs",
            result.sync_type.value,
            result.total_assets,
            result.upserted_count,
            result.deleted_count,
            result.skipped_checksums,
            time.time() - started_at,
        )
        return result

    def _partner_ids(self) -> list[str]:
        try:
            ids = list(self.client.fetch_partner_user_ids())
        except Exception as e:
            logger.warning("fetch_partners_failed error=%s proceeding_without_partners=1", e)
            return []
        logger.debug("partners_fetched count=%s", len(ids))
        return ids

    def _full_sync(self, user_id: str) -> SyncResult:
        # Fixed snapshot so assets changing mid-pull do not tear the listing.
        updated_until = datetime.now(timezone.utc)
        assets: list[ServerAsset] = []
        last_id: Optional[str] = None
        while True:
            page = self.client.fetch_full_sync_page(user_id, self.page_size, last_id, updated_until)
            assets.extend(page)
            logger.debug("full_sync_page fetched=%s total=%s last_id=%s", len(page), len(assets), last_id)
            if len(page) < self.page_size:
                break
            last_id = page[-1].id

        records, skipped = _convert(assets)
        self.server_index.replace_all(records)
        return SyncResult(
            sync_type=SyncType.FULL,
            total_assets=len(records),
            upserted_count=len(records),
            deleted_count=0,
            skipped_checksums=skipped,
        )

    def _delta_sync(self, user_ids: list[str], last_sync_time: float) -> SyncResult:
        updated_after = datetime.fromtimestamp(last_sync_time, tz=timezone.utc)
        logger.info("delta_sync_start updated_after=%s users=%s", updated_after.isoformat(), len(user_ids))
        response = self.client.fetch_delta_sync(updated_after, user_ids)
        if response.needs_full_sync:
            raise NeedsFullSyncFallback()

        records, skipped = _convert(response.upserted)
        upserted, deleted = self.server_index.apply_delta(records, response.deleted)
        return SyncResult(
            sync_type=SyncType.DELTA,
            total_assets=self.server_index.count(),
            upserted_count=upserted,
            deleted_count=deleted,
            skipped_checksums=skipped,
        )
