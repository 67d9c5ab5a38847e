from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Optional

from assetsync.media.library import MediaLibrary
from assetsync.store.upload_ledger import UploadLedger

logger = logging.getLogger("favorites")


class FavoriteSync:
    """Pushes local favorite changes of uploaded assets to the server."""

    def __init__(self, library: MediaLibrary, client, ledger: UploadLedger):
        self.library = library
        self.client = client
        self.ledger = ledger
        self._lock = threading.Lock()

    def detect_changes(self) -> list[tuple[str, str, bool]]:
        """(local id, remote id, new favorite) for every uploaded asset whose favorite flag moved."""
        stored = self.ledger.favorite_states()
        if not stored:
            return []
        current = self.library.favorite_states(list(dict.fromkeys(aid for aid, _, _ in stored)))
        changes: list[tuple[str, str, bool]] = []
        for asset_id, remote_id, stored_favorite in stored:
            now_favorite = current.get(asset_id)
            if now_favorite is None:
                # gone from the library
                continue
            if now_favorite != stored_favorite:
                changes.append((asset_id, remote_id, now_favorite))
        return changes

    def _sync_blocking(self) -> dict[str, Any]:
        changes = self.detect_changes()
        if not changes:
            logger.debug("favorite_sync_no_changes")
            return {"favorited": 0, "unfavorited": 0}

        logger.info("favorite_changes_detected count=%s", len(changes))
        favorited = 0
        unfavorited = 0
        for target in (True, False):
            group = [c for c in changes if c[2] is target]
            if not group:
                continue
            remote_ids = list(dict.fromkeys(remote_id for _, remote_id, _ in group))
            self.client.update_assets_favorite(remote_ids, target)
            self.ledger.batch_update_favorite((asset_id, target) for asset_id, _, _ in group)
            if target:
                favorited = len(remote_ids)
            else:
                unfavorited = len(remote_ids)
        logger.info("favorite_sync_done favorited=%s unfavorited=%s", favorited, unfavorited)
        return {"favorited": favorited, "unfavorited": unfavorited}

    async def sync(self) -> Optional[dict[str, Any]]:
        if not self._lock.acquire(blocking=False):
            logger.debug("favorite_sync_skipped reason=sync_busy")
            return None
        try:
            return await asyncio.to_thread(self._sync_blocking)
        except Exception as e:
            logger.error("favorite_sync_failed error=%s", e)
            return None
        finally:
            self._lock.release()
