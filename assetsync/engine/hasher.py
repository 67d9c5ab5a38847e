from __future__ import annotations

import asyncio
import hashlib
import logging
from typing import Optional, Sequence

from assetsync.core.errors import AssetSyncError, HashCalculationFailed, NoResourceFound
from assetsync.core.models import HashResult, ResourceType
from assetsync.media.library import AssetResource, is_raw_identifier

logger = logging.getLogger("hash")

DEFAULT_CHUNK_SIZE = 64 * 1024


def is_raw_resource(resource: AssetResource) -> bool:
    if resource.resource_type == ResourceType.RAW:
        return True
    if is_raw_identifier(resource.uti):
        return True
    suffix = resource.original_filename.rsplit(".", 1)[-1] if "." in resource.original_filename else ""
    return is_raw_identifier(suffix)


def select_resources(resources: Sequence[AssetResource]) -> tuple[AssetResource, Optional[AssetResource]]:
    """Pick (primary, raw) for an asset; raises NoResourceFound without a primary."""
    primary: Optional[AssetResource] = None
    raw: Optional[AssetResource] = None
    for resource in resources:
        if is_raw_resource(resource):
            if raw is None:
                raw = resource
        elif primary is None and resource.resource_type in (ResourceType.PRIMARY, ResourceType.VIDEO):
            primary = resource
    if primary is None:
        primary = next((r for r in resources if not is_raw_resource(r)), None)
    if primary is None:
        raise NoResourceFound(f"no primary resource among {len(resources)}")
    return primary, raw


class ContentHasher:
    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.chunk_size = chunk_size

    def _hash_blocking(self, resource: AssetResource) -> tuple[str, int]:
        h = hashlib.sha1()
        total = 0
        try:
            for chunk in resource.open_chunks(self.chunk_size):
                h.update(chunk)
                total += len(chunk)
        except AssetSyncError:
            raise
        except Exception as e:
            raise HashCalculationFailed(f"{resource.original_filename}: {e}") from e
        return h.hexdigest(), total

    async def hash_resource(self, resource: AssetResource) -> tuple[str, int]:
        return await asyncio.to_thread(self._hash_blocking, resource)

    async def hash_asset(self, asset_id: str, resources: Sequence[AssetResource]) -> HashResult:
        primary, raw = select_resources(resources)
        if raw is None:
            primary_hash, primary_size = await self.hash_resource(primary)
            raw_hash, raw_size = None, None
        else:
            (primary_hash, primary_size), (raw_hash, raw_size) = await asyncio.gather(
                self.hash_resource(primary),
                self.hash_resource(raw),
            )
        logger.debug(
            "asset_hashed asset_id=%s primary=%s raw=%s bytes=%s",
            asset_id,
            primary_hash[:12],
            raw_hash[:12] if raw_hash else "-",
            primary_size + (raw_size or 0),
        )
        return HashResult(
            asset_id=asset_id,
            primary_hash=primary_hash,
            primary_file_size=primary_size,
            raw_hash=raw_hash,
            raw_file_size=raw_size,
            has_raw=raw is not None,
        )
