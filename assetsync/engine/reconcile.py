from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence

from pydantic import BaseModel

from assetsync.core.models import (
    PRIMARY_RESOURCE_TYPES,
    HashCacheRecord,
    HashResult,
    ResourceType,
    SyncStatus,
    is_fully_on_server,
)
from assetsync.media.library import MediaLibrary
from assetsync.store.hash_cache import HashCacheStore
from assetsync.store.server_index import ServerIndexStore
from assetsync.store.upload_ledger import UploadLedger

from .hasher import ContentHasher

logger = logging.getLogger("hash")

CLOUD_ID_BATCH_SIZE = 500


class ReconcileProgress(BaseModel):
    is_processing: bool = False
    phase: str = "idle"
    processed: int = 0
    total: int = 0
    message: str = ""
    cloud_id_match_count: int = 0
    started_at: Optional[float] = None
    finished_at: Optional[float] = None


def _batches(items: Sequence[str], size: int):
    for start in range(0, len(items), size):
        yield list(items[start:start + size])


class ReconciliationEngine:
    """Decides, per local asset, whether its resources already exist remotely.

    One pipeline run at a time: needs-hash filter, optional cloud id
    short-circuit, bounded hashing, then bounded presence checks against
    the upload ledger and the server index. Results are persisted in the
    hash cache; ``statuses`` is the in-memory projection callers read.
    """

    def __init__(
        self,
        library: MediaLibrary,
        hasher: ContentHasher,
        hash_cache: HashCacheStore,
        ledger: UploadLedger,
        server_index: ServerIndexStore,
        hash_concurrency: int = 3,
        check_concurrency: int = 5,
        cloud_id_batch_size: int = CLOUD_ID_BATCH_SIZE,
    ):
        self.library = library
        self.hasher = hasher
        self.hash_cache = hash_cache
        self.ledger = ledger
        self.server_index = server_index
        self.hash_concurrency = max(1, int(hash_concurrency))
        self.check_concurrency = max(1, int(check_concurrency))
        self.cloud_id_batch_size = max(1, int(cloud_id_batch_size))

        self.progress = ReconcileProgress()
        self._statuses: dict[str, SyncStatus] = {}
        self._run_errors: set[str] = set()
        self._stop_requested = False
        self._task: Optional[asyncio.Task] = None
        self._workers: list[asyncio.Task] = []

    # -- status projection -------------------------------------------

    @property
    def is_processing(self) -> bool:
        return self.progress.is_processing

    @property
    def statuses(self) -> dict[str, SyncStatus]:
        return dict(self._statuses)

    def get_sync_status(self, asset_id: str) -> SyncStatus:
        return self._statuses.get(asset_id, SyncStatus.PENDING)

    def _persisted_statuses(self) -> dict[str, SyncStatus]:
        return self.hash_cache.all_sync_status(
            self.ledger.uploaded_resource_types(),
            self.server_index.has_cache(),
        )

    def load_cached_status(self) -> dict[str, SyncStatus]:
        self._statuses = self._persisted_statuses()
        logger.info("status_loaded count=%s", len(self._statuses))
        return self.statuses

    def status_counts(self) -> dict[str, int]:
        out = {status.value: 0 for status in SyncStatus}
        for status in self._statuses.values():
            out[status.value] += 1
        return out

    # -- lifecycle -----------------------------------------------------

    def _begin(self, message: str) -> None:
        self._stop_requested = False
        self._run_errors = set()
        self.progress = ReconcileProgress(
            is_processing=True,
            phase="starting",
            message=message,
            started_at=time.time(),
        )

    def start_background_processing(self, asset_ids: Optional[Iterable[str]] = None) -> Optional[asyncio.Task]:
        """Schedule a pipeline run on the running loop; ``None`` if one is already active."""
        if self.progress.is_processing:
            logger.info("reconcile_skipped reason=already_processing")
            return None
        self._begin("queued")
        ids = list(asset_ids) if asset_ids is not None else None
        return self._spawn(ids)

    async def run(self, asset_ids: Optional[Iterable[str]] = None) -> Optional[dict[str, Any]]:
        if self.progress.is_processing:
            logger.info("reconcile_skipped reason=already_processing")
            return None
        self._begin("starting")
        ids = list(asset_ids) if asset_ids is not None else None
        task = self._spawn(ids)
        try:
            await asyncio.wait({task})
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task.cancelled():
            return None
        return task.result()

    def force_reprocess(self, asset_ids: Optional[Iterable[str]] = None) -> Optional[asyncio.Task]:
        if self.progress.is_processing:
            logger.info("force_reprocess_skipped reason=already_processing")
            return None
        self.hash_cache.clear()
        self._statuses = {}
        return self.start_background_processing(asset_ids)

    def stop_processing(self) -> None:
        """Soft stop: units already running finish, nothing new starts."""
        if not self.progress.is_processing:
            return
        self._stop_requested = True
        self.progress.message = "stopping"
        logger.info("reconcile_stop_requested mode=soft")

    def cancel(self) -> None:
        """Hard stop: cancel in-flight units as well."""
        self._stop_requested = True
        logger.info("reconcile_stop_requested mode=hard workers=%s", len(self._workers))
        for worker in self._workers:
            worker.cancel()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def _spawn(self, ids: Optional[list[str]]) -> asyncio.Task:
        task = asyncio.create_task(self._execute(ids))
        task.add_done_callback(self._on_task_done)
        self._task = task
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        # A task cancelled before its first step never enters _execute.
        if self._task is not task:
            return
        logger.warning("reconcile_cancelled_before_start")
        self.progress.is_processing = False
        self.progress.phase = "idle"
        self.progress.message = "cancelled"
        self.progress.finished_at = time.time()
        self._workers = []
        self._task = None

    async def _execute(self, asset_ids: Optional[list[str]]) -> Optional[dict[str, Any]]:
        try:
            return await self._pipeline(asset_ids)
        except asyncio.CancelledError:
            logger.warning("reconcile_cancelled phase=%s", self.progress.phase)
            self.progress.message = "cancelled"
            raise
        except Exception:
            logger.exception("reconcile_failed phase=%s", self.progress.phase)
            self.progress.message = "failed"
            raise
        finally:
            self.progress.is_processing = False
            self.progress.phase = "idle"
            self.progress.finished_at = time.time()
            self._workers = []
            self._task = None

    # -- pipeline ------------------------------------------------------

    async def _pipeline(self, asset_ids: Optional[list[str]]) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "candidates": 0,
            "needed_hash": 0,
            "cloud_id_matches": 0,
            "hashed": 0,
            "hash_errors": 0,
            "orphans_removed": 0,
            "checked": 0,
            "stopped": False,
        }

        live_ids = await asyncio.to_thread(self.library.list_current_local_identifiers)
        candidates = list(dict.fromkeys(asset_ids if asset_ids is not None else live_ids))
        summary["candidates"] = len(candidates)
        for asset_id in candidates:
            self._statuses.setdefault(asset_id, SyncStatus.PENDING)

        needs_hash = await asyncio.to_thread(self.hash_cache.assets_needing_hash, candidates)
        summary["needed_hash"] = len(needs_hash)
        logger.info("reconcile_start candidates=%s needs_hash=%s", len(candidates), len(needs_hash))

        if needs_hash and not self._stop_requested:
            needs_hash = await self._cloud_id_short_circuit(needs_hash)
            summary["cloud_id_matches"] = self.progress.cloud_id_match_count

        if needs_hash and not self._stop_requested:
            hashed = await self._hash_phase(needs_hash)
            summary["hashed"] = hashed
            summary["hash_errors"] = len(self._run_errors)

        if not self._stop_requested:
            orphans, checked = await self._check_phase(live_ids)
            summary["orphans_removed"] = orphans
            summary["checked"] = checked

        summary["stopped"] = self._stop_requested
        await self._finish()
        counts = self.status_counts()
        summary["uploaded"] = counts[SyncStatus.UPLOADED.value]
        summary["not_uploaded"] = counts[SyncStatus.NOT_UPLOADED.value]
        summary["error"] = counts[SyncStatus.ERROR.value]
        logger.info(
            "reconcile_done hashed=%s hash_errors=%s cloud_id_matches=%s checked=%s orphans=%s stopped=%s",
            summary["hashed"],
            summary["hash_errors"],
            summary["cloud_id_matches"],
            summary["checked"],
            summary["orphans_removed"],
            summary["stopped"],
        )
        return summary

    async def _finish(self) -> None:
        statuses = await asyncio.to_thread(self._persisted_statuses)
        for asset_id in self._run_errors:
            statuses[asset_id] = SyncStatus.ERROR
        self._statuses = statuses
        self.progress.phase = "idle"
        self.progress.message = "stopped" if self._stop_requested else "done"

    async def _run_pool(
        self,
        items: Sequence[Any],
        handler: Callable[[Any], Awaitable[None]],
        concurrency: int,
    ) -> None:
        queue: asyncio.Queue = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)

        async def worker():
            while not self._stop_requested:
                try:
                    item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await handler(item)
                self.progress.processed += 1

        self._workers = [asyncio.create_task(worker()) for _ in range(min(concurrency, len(items)))]
        try:
            await asyncio.gather(*self._workers)
        finally:
            for w in self._workers:
                if not w.done():
                    w.cancel()
            self._workers = []

    # cloud ids ---------------------------------------------------------

    async def _cloud_id_short_circuit(self, asset_ids: list[str]) -> list[str]:
        if not self.library.supports_cloud_ids:
            return asset_ids
        if not await asyncio.to_thread(self.server_index.has_cloud_ids):
            return asset_ids

        self.progress.phase = "cloud_id_matching"
        self.progress.message = "matching cloud ids"
        remaining: list[str] = []
        matched = 0
        batches = list(_batches(asset_ids, self.cloud_id_batch_size))
        for index, batch in enumerate(batches):
            if self._stop_requested:
                for rest in batches[index:]:
                    remaining.extend(rest)
                break
            try:
                mapping = await asyncio.to_thread(self.library.cloud_identifiers_for, batch)
            except Exception as e:
                logger.warning("cloud_id_lookup_failed batch=%s error=%s", len(batch), e)
                remaining.extend(batch)
                continue

            cloud_ids = {aid: cid for aid, cid in mapping.items() if cid}
            checksums = await asyncio.to_thread(self.server_index.checksums_by_cloud_ids, cloud_ids.values())
            found: list[HashResult] = []
            for asset_id in batch:
                cid = cloud_ids.get(asset_id)
                checksum = checksums.get(cid) if cid else None
                if checksum:
                    found.append(HashResult(asset_id=asset_id, primary_hash=checksum))
                else:
                    remaining.append(asset_id)
            if found:
                await asyncio.to_thread(self.hash_cache.batch_upsert_on_server, found)
                for item in found:
                    self._statuses[item.asset_id] = SyncStatus.UPLOADED
            matched += len(found)

        self.progress.cloud_id_match_count = matched
        if matched:
            logger.info("cloud_id_matched count=%s remaining=%s", matched, len(remaining))
        return remaining

    # hashing -----------------------------------------------------------

    async def _hash_phase(self, asset_ids: list[str]) -> int:
        self.progress.phase = "hashing"
        self.progress.processed = 0
        self.progress.total = len(asset_ids)
        self.progress.message = f"hashing 0/{len(asset_ids)}"
        hashed = 0

        async def handle(asset_id: str) -> None:
            nonlocal hashed
            self._statuses[asset_id] = SyncStatus.PROCESSING
            try:
                resources = await asyncio.to_thread(self.library.resources_for, asset_id)
                result = await self.hasher.hash_asset(asset_id, resources)
                await asyncio.to_thread(self.hash_cache.batch_upsert, [result])
            except Exception as e:
                logger.warning("hash_failed asset_id=%s error=%s", asset_id, e)
                self._statuses[asset_id] = SyncStatus.ERROR
                self._run_errors.add(asset_id)
                return
            hashed += 1
            self._statuses[asset_id] = SyncStatus.PENDING
            self.progress.message = f"hashing {self.progress.processed + 1}/{self.progress.total}"

        await self._run_pool(asset_ids, handle, self.hash_concurrency)
        logger.info("hash_phase_done hashed=%s errors=%s", hashed, len(self._run_errors))
        return hashed

    # presence check ----------------------------------------------------

    def _resolve_presence(self, record: HashCacheRecord, has_server_cache: bool) -> tuple[bool, bool]:
        primary = record.primary_on_server
        raw = record.raw_on_server
        if not primary:
            if self.ledger.is_uploaded(record.asset_id, PRIMARY_RESOURCE_TYPES):
                primary = True
            elif has_server_cache:
                primary = self.server_index.contains_checksum(record.primary_hash)
        if record.has_raw and not raw:
            if self.ledger.is_uploaded(record.asset_id, [ResourceType.RAW.value]):
                raw = True
            elif has_server_cache and record.raw_hash:
                raw = self.server_index.contains_checksum(record.raw_hash)
        return primary, raw

    async def _check_phase(self, live_ids: Sequence[str]) -> tuple[int, int]:
        self.progress.phase = "checking"
        self.progress.message = "checking cloud status"

        live = set(live_ids)
        cached = await asyncio.to_thread(self.hash_cache.all_ids)
        orphans = sorted(cached - live)
        removed = 0
        if orphans:
            removed = await asyncio.to_thread(self.hash_cache.delete_orphans, orphans)
            for asset_id in orphans:
                self._statuses.pop(asset_id, None)

        records = await asyncio.to_thread(self.hash_cache.records_not_fully_on_server)
        has_server_cache = await asyncio.to_thread(self.server_index.has_cache)
        self.progress.processed = 0
        self.progress.total = len(records)
        checked = 0

        async def handle(record: HashCacheRecord) -> None:
            nonlocal checked, removed
            asset_id = record.asset_id
            try:
                if not await asyncio.to_thread(self.library.exists_locally, asset_id):
                    removed += await asyncio.to_thread(self.hash_cache.delete_orphans, [asset_id])
                    self._statuses.pop(asset_id, None)
                    return
                self._statuses[asset_id] = SyncStatus.CHECKING
                primary, raw = await asyncio.to_thread(self._resolve_presence, record, has_server_cache)
                await asyncio.to_thread(self.hash_cache.update_presence_flags, asset_id, primary, raw)
            except Exception as e:
                logger.warning("presence_check_failed asset_id=%s error=%s", asset_id, e)
                self._statuses[asset_id] = SyncStatus.ERROR
                self._run_errors.add(asset_id)
                return
            checked += 1
            uploaded = is_fully_on_server(record.has_raw, primary, raw)
            self._statuses[asset_id] = SyncStatus.UPLOADED if uploaded else SyncStatus.NOT_UPLOADED
            self.progress.message = f"checking cloud status {self.progress.processed + 1}/{self.progress.total}"

        await self._run_pool(records, handle, self.check_concurrency)
        logger.info(
            "check_phase_done checked=%s orphans=%s has_server_cache=%s",
            checked,
            removed,
            has_server_cache,
        )
        return removed, checked
