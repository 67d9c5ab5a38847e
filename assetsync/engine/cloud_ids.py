from __future__ import annotations

import asyncio
import logging

from assetsync.media.library import MediaLibrary
from assetsync.store.upload_ledger import UploadLedger

logger = logging.getLogger("sync")

BATCH_SIZE = 500


def _is_complete_cloud_id(value) -> bool:
    # Incomplete ids look like "GUID:ID:" with the trailing hash missing.
    return isinstance(value, str) and bool(value) and not value.endswith(":")


class CloudIdSync:
    """Attaches platform cloud ids to already-uploaded assets as server metadata."""

    def __init__(self, library: MediaLibrary, client, ledger: UploadLedger, batch_size: int = BATCH_SIZE):
        self.library = library
        self.client = client
        self.ledger = ledger
        self.batch_size = max(1, int(batch_size))

    def collect(self) -> dict[str, str]:
        """remote id -> cloud id for every uploaded primary with a usable cloud id."""
        mappings = self.ledger.uploaded_primary_mappings()
        remote_by_local: dict[str, str] = {}
        for asset_id, remote_id in mappings:
            remote_by_local.setdefault(asset_id, remote_id)
        local_ids = list(remote_by_local)

        out: dict[str, str] = {}
        for start in range(0, len(local_ids), self.batch_size):
            batch = local_ids[start:start + self.batch_size]
            try:
                cloud_ids = self.library.cloud_identifiers_for(batch)
            except Exception as e:
                logger.warning("cloud_id_lookup_failed batch=%s error=%s", len(batch), e)
                continue
            for asset_id in batch:
                cloud_id = cloud_ids.get(asset_id)
                if _is_complete_cloud_id(cloud_id):
                    out[remote_by_local[asset_id]] = cloud_id
        logger.info("cloud_ids_collected uploaded=%s with_cloud_id=%s", len(local_ids), len(out))
        return out

    def _sync_blocking(self) -> int:
        if not self.library.supports_cloud_ids:
            logger.info("cloud_id_sync_skipped reason=library_without_cloud_ids")
            return 0
        items = list(self.collect().items())
        updated = 0
        for start in range(0, len(items), self.batch_size):
            batch = dict(items[start:start + self.batch_size])
            try:
                self.client.update_bulk_asset_metadata(batch)
            except Exception as e:
                logger.error("cloud_id_batch_failed index=%s size=%s error=%s", start // self.batch_size + 1, len(batch), e)
                continue
            updated += len(batch)
        logger.info("cloud_id_sync_done updated=%s total=%s", updated, len(items))
        return updated

    async def sync(self) -> int:
        return await asyncio.to_thread(self._sync_blocking)
