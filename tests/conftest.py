from pathlib import Path
from typing import Optional

import pytest

from assetsync.core.models import ResourceType
from assetsync.media.library import AssetResource, MediaLibrary
from assetsync.store.db import Database
from assetsync.store.hash_cache import HashCacheStore
from assetsync.store.server_index import ServerIndexStore
from assetsync.store.upload_ledger import UploadLedger


class FakeLibrary(MediaLibrary):
    """In-memory library backed by real files under tmp_path."""

    def __init__(self, root: Path):
        self.root = root
        self.assets: dict[str, list[AssetResource]] = {}
        self.missing: set[str] = set()
        self.favorites: dict[str, bool] = {}
        self.cloud_ids: dict[str, Optional[str]] = {}
        self.supports_cloud_ids = False

    def add(self, asset_id: str, files: dict[str, bytes]) -> None:
        resources = []
        for name, data in files.items():
            path = self.root / asset_id.replace("/", "_") / name
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
            ext = name.rsplit(".", 1)[-1].lower()
            rtype = ResourceType.RAW if ext in {"dng", "cr2", "nef", "arw"} else ResourceType.PRIMARY
            resources.append(AssetResource(resource_type=rtype, original_filename=name, path=path, uti=ext))
        self.assets[asset_id] = resources

    def list_current_local_identifiers(self) -> list[str]:
        return [aid for aid in self.assets if aid not in self.missing]

    def resources_for(self, asset_id: str) -> list[AssetResource]:
        return list(self.assets.get(asset_id, []))

    def exists_locally(self, asset_id: str) -> bool:
        return asset_id in self.assets and asset_id not in self.missing

    def cloud_identifiers_for(self, asset_ids):
        return {aid: self.cloud_ids.get(aid) for aid in asset_ids}

    def favorite_states(self, asset_ids):
        return {aid: self.favorites.get(aid, False) for aid in asset_ids if self.exists_locally(aid)}


@pytest.fixture
def db(tmp_path: Path) -> Database:
    return Database(str(tmp_path / "runtime" / "assetsync.db"))


@pytest.fixture
def hash_cache(db) -> HashCacheStore:
    return HashCacheStore(db)


@pytest.fixture
def ledger(db, hash_cache) -> UploadLedger:
    return UploadLedger(db, hash_cache)


@pytest.fixture
def server_index(db) -> ServerIndexStore:
    return ServerIndexStore(db)


@pytest.fixture
def library(tmp_path: Path) -> FakeLibrary:
    return FakeLibrary(tmp_path / "media")
