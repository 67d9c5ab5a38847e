from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from assetsync.core.models import ResourceType, UploadJobStatus
from assetsync.media.library import AssetResource, LocalAsset, MediaLibrary
from assetsync.store.upload_ledger import UploadLedger

from .hasher import is_raw_resource

logger = logging.getLogger("upload")


def resource_type_of(resource: AssetResource) -> str:
    if is_raw_resource(resource):
        return ResourceType.RAW.value
    return resource.resource_type.value


class Uploader:
    """Pushes not-yet-uploaded resources through the transport and records results in the ledger."""

    def __init__(
        self,
        library: MediaLibrary,
        client,
        ledger: UploadLedger,
        upload_concurrency: int = 2,
        max_retries: int = 5,
    ):
        self.library = library
        self.client = client
        self.ledger = ledger
        self.upload_concurrency = max(1, int(upload_concurrency))
        self.max_retries = max_retries
        # (asset_id, resource_type) pairs this uploader is sending right now
        self._in_flight: set[tuple[str, str]] = set()

    async def upload_assets(
        self,
        asset_ids: Iterable[str],
        only_types: Optional[dict[str, set[str]]] = None,
    ) -> dict[str, Any]:
        ids = list(dict.fromkeys(asset_ids))
        stats = {"assets": len(ids), "uploaded": 0, "duplicates": 0, "skipped": 0, "failed": 0}
        sem = asyncio.Semaphore(self.upload_concurrency)

        async def one(asset_id: str) -> None:
            async with sem:
                wanted = only_types.get(asset_id) if only_types is not None else None
                await self._upload_asset(asset_id, wanted, stats)

        logger.info("upload_batch_start assets=%s concurrency=%s", len(ids), self.upload_concurrency)
        await asyncio.gather(*(one(asset_id) for asset_id in ids))
        logger.info(
            "upload_batch_done uploaded=%s duplicates=%s skipped=%s failed=%s",
            stats["uploaded"],
            stats["duplicates"],
            stats["skipped"],
            stats["failed"],
        )
        return stats

    async def retry_failed(self, limit: int = 500) -> dict[str, Any]:
        jobs = await asyncio.to_thread(self.ledger.retryable_jobs, limit, self.max_retries)
        jobs = [job for job in jobs if (job.asset_id, job.resource_type) not in self._in_flight]
        by_asset: dict[str, set[str]] = {}
        for job in jobs:
            by_asset.setdefault(job.asset_id, set()).add(job.resource_type)
        logger.info("retry_failed_start jobs=%s assets=%s", len(jobs), len(by_asset))
        return await self.upload_assets(list(by_asset), only_types=by_asset)

    async def purge_completed(self) -> int:
        return await asyncio.to_thread(self.ledger.purge_completed_jobs)

    def _cloud_id(self, asset_id: str) -> Optional[str]:
        if not self.library.supports_cloud_ids:
            return None
        try:
            cloud_id = self.library.cloud_identifiers_for([asset_id]).get(asset_id)
        except Exception as e:
            logger.debug("cloud_id_lookup_failed asset_id=%s error=%s", asset_id, e)
            return None
        if not cloud_id or cloud_id.endswith(":"):
            return None
        return cloud_id

    async def _upload_asset(self, asset_id: str, wanted: Optional[set[str]], stats: dict[str, Any]) -> None:
        asset: Optional[LocalAsset] = await asyncio.to_thread(self.library.get_asset, asset_id)
        if asset is None or not asset.resources:
            logger.warning("upload_no_resources asset_id=%s", asset_id)
            stats["skipped"] += 1
            return

        now = datetime.now(timezone.utc)
        created_at = asset.created_at or now
        modified_at = asset.modified_at or created_at
        cloud_id = await asyncio.to_thread(self._cloud_id, asset_id)

        for resource in asset.resources:
            rtype = resource_type_of(resource)
            if wanted is not None and rtype not in wanted:
                continue
            key = (asset_id, rtype)
            if key in self._in_flight or await asyncio.to_thread(self.ledger.is_uploaded, asset_id, [rtype]):
                stats["skipped"] += 1
                continue

            filename = resource.original_filename
            self._in_flight.add(key)
            try:
                await asyncio.to_thread(self.ledger.record_attempt, asset_id, rtype, filename, UploadJobStatus.UPLOADING)
                response = await asyncio.to_thread(
                    self.client.upload_resource,
                    resource,
                    f"{asset_id}-{rtype}-{filename}",
                    created_at,
                    modified_at,
                    asset.is_favorite,
                    cloud_id,
                )
                size = await asyncio.to_thread(lambda: resource.size)
                await asyncio.to_thread(
                    self.ledger.record_result,
                    asset_id,
                    rtype,
                    filename,
                    response.id,
                    size,
                    response.duplicate,
                    asset.is_favorite,
                )
            except Exception as e:
                logger.warning("upload_failed asset_id=%s type=%s filename=%s error=%s", asset_id, rtype, filename, e)
                await asyncio.to_thread(self.ledger.mark_failed, asset_id, rtype, str(e))
                stats["failed"] += 1
                continue
            finally:
                self._in_flight.discard(key)

            stats["uploaded"] += 1
            if response.duplicate:
                stats["duplicates"] += 1
