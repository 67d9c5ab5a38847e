"""Wiring: builds every store and service from one config so callers share one database writer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from assetsync.core.config import AppConfig, load_config
from assetsync.engine.cloud_ids import CloudIdSync
from assetsync.engine.favorites import FavoriteSync
from assetsync.engine.hasher import ContentHasher
from assetsync.engine.reconcile import ReconciliationEngine
from assetsync.engine.uploader import Uploader
from assetsync.media.library import FilesystemMediaLibrary, MediaLibrary
from assetsync.remote.client import ImmichClient
from assetsync.remote.sync import RemoteSyncClient
from assetsync.store.db import Database
from assetsync.store.hash_cache import HashCacheStore
from assetsync.store.server_index import ServerIndexStore
from assetsync.store.upload_ledger import UploadLedger


@dataclass
class Services:
    cfg: AppConfig
    db: Database
    hash_cache: HashCacheStore
    ledger: UploadLedger
    server_index: ServerIndexStore
    library: MediaLibrary
    client: ImmichClient
    remote_sync: RemoteSyncClient
    engine: ReconciliationEngine
    uploader: Uploader
    favorites: FavoriteSync
    cloud_ids: CloudIdSync


def build_services(
    cfg: Optional[AppConfig] = None,
    *,
    library: Optional[MediaLibrary] = None,
    client=None,
) -> Services:
    cfg = cfg or load_config()
    db = Database(cfg.database.path)
    hash_cache = HashCacheStore(db)
    ledger = UploadLedger(db, hash_cache)
    server_index = ServerIndexStore(db)
    library = library or FilesystemMediaLibrary.from_config(cfg)
    client = client or ImmichClient.from_config(cfg)
    eng = cfg.engine

    engine = ReconciliationEngine(
        library=library,
        hasher=ContentHasher(chunk_size=eng.chunk_size),
        hash_cache=hash_cache,
        ledger=ledger,
        server_index=server_index,
        hash_concurrency=eng.hash_concurrency,
        check_concurrency=eng.check_concurrency,
        cloud_id_batch_size=eng.cloud_id_batch_size,
    )
    return Services(
        cfg=cfg,
        db=db,
        hash_cache=hash_cache,
        ledger=ledger,
        server_index=server_index,
        library=library,
        client=client,
        remote_sync=RemoteSyncClient(client, server_index, page_size=eng.full_sync_page_size),
        engine=engine,
        uploader=Uploader(
            library,
            client,
            ledger,
            upload_concurrency=eng.upload_concurrency,
            max_retries=eng.max_upload_retries,
        ),
        favorites=FavoriteSync(library, client, ledger),
        cloud_ids=CloudIdSync(library, client, ledger, batch_size=eng.cloud_id_batch_size),
    )
