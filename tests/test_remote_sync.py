import asyncio
import base64
import hashlib

import pytest

from assetsync.core.errors import RemoteApiError, RemoteSyncFailed
from assetsync.core.models import SyncType
from assetsync.remote.models import DeltaSyncResponse, ServerAsset, UserInfo
from assetsync.remote.sync import RemoteSyncClient, checksum_to_hex


def _sha1(data: bytes) -> str:
    return hashlib.sha1(data).hexdigest()


def _b64(hex_value: str) -> str:
    return base64.b64encode(bytes.fromhex(hex_value)).decode()


def _asset(remote_id: str, data: bytes, cloud_id: str | None = None) -> ServerAsset:
    payload = {"id": remote_id, "checksum": _b64(_sha1(data)), "originalFileName": f"{remote_id}.jpg", "type": "IMAGE"}
    if cloud_id:
        payload["metadata"] = [{"key": "yaiiu-app", "value": {"iCloudId": cloud_id}}]
    return ServerAsset.model_validate(payload)


class _FakeClient:
    def __init__(self):
        self.assets: list[ServerAsset] = []
        self.delta = DeltaSyncResponse()
        self.partner_error: Exception | None = None
        self.user_error: Exception | None = None
        self.full_calls: list[tuple] = []
        self.delta_calls: list[tuple] = []

    def get_current_user(self):
        if self.user_error is not None:
            raise self.user_error
        return UserInfo(id="user-1")

    def fetch_partner_user_ids(self):
        if self.partner_error is not None:
            raise self.partner_error
        return ["partner-1"]

    def fetch_full_sync_page(self, user_id, limit, last_id, updated_until):
        self.full_calls.append((user_id, limit, last_id, updated_until))
        start = 0
        if last_id is not None:
            start = next(i for i, a in enumerate(self.assets) if a.id == last_id) + 1
        return self.assets[start:start + limit]

    def fetch_delta_sync(self, updated_after, user_ids):
        self.delta_calls.append((updated_after, list(user_ids)))
        return self.delta


def test_checksum_to_hex_round_trip_and_invalid_input():
    digest = _sha1(b"hello")
    assert checksum_to_hex(_b64(digest)) == digest
    assert checksum_to_hex("not base64!!") is None
    assert checksum_to_hex("") is None


def test_full_sync_pages_until_short_page(server_index):
    client = _FakeClient()
    client.assets = [_asset(f"r{i}", f"data-{i}".encode()) for i in range(5)]
    sync = RemoteSyncClient(client, server_index, page_size=2)

    result = asyncio.run(sync.sync())

    assert result.sync_type == SyncType.FULL
    assert result.total_assets == 5
    assert [c[2] for c in client.full_calls] == [None, "r1", "r3"]
    # One snapshot for every page of the run.
    assert len({c[3] for c in client.full_calls}) == 1
    assert server_index.contains_checksum(_sha1(b"data-4"))
    meta = server_index.get_sync_metadata()
    assert meta.last_sync_type == SyncType.FULL
    assert meta.remote_user_id == "user-1"


def test_undecodable_checksums_are_skipped_and_counted(server_index):
    client = _FakeClient()
    client.assets = [_asset("good", b"good"), ServerAsset(id="bad", checksum="%%%")]

    result = asyncio.run(RemoteSyncClient(client, server_index).sync())

    assert result.total_assets == 1
    assert result.skipped_checksums == 1
    assert server_index.count() == 1


def test_delta_sync_applies_upserts_and_deletes(server_index):
    client = _FakeClient()
    client.assets = [_asset("r1", b"one"), _asset("r2", b"two")]
    sync = RemoteSyncClient(client, server_index)
    asyncio.run(sync.sync())

    client.delta = DeltaSyncResponse(upserted=[_asset("r3", b"three")], deleted=["r1"])
    result = asyncio.run(sync.sync())

    assert result.sync_type == SyncType.DELTA
    assert result.needs_full_sync is False
    assert client.delta_calls[0][1] == ["user-1", "partner-1"]
    assert not server_index.contains_checksum(_sha1(b"one"))
    assert server_index.contains_checksum(_sha1(b"three"))
    assert result.total_assets == 2
    assert server_index.get_sync_metadata().last_sync_type == SyncType.DELTA


def test_delta_requesting_full_sync_falls_back(server_index):
    client = _FakeClient()
    client.assets = [_asset("r1", b"one")]
    sync = RemoteSyncClient(client, server_index)
    asyncio.run(sync.sync())

    client.delta = DeltaSyncResponse(needs_full_sync=True)
    client.assets = [_asset("r9", b"nine")]
    result = asyncio.run(sync.sync())

    assert result.sync_type == SyncType.FULL
    assert result.needs_full_sync is True
    assert server_index.get_sync_metadata().last_sync_type == SyncType.FULL
    assert not server_index.contains_checksum(_sha1(b"one"))
    assert server_index.contains_checksum(_sha1(b"nine"))


def test_force_full_skips_delta(server_index):
    client = _FakeClient()
    sync = RemoteSyncClient(client, server_index)
    asyncio.run(sync.sync())
    asyncio.run(sync.sync(force_full=True))

    assert client.delta_calls == []
    assert len(client.full_calls) == 2


def test_partner_failure_proceeds_with_own_user(server_index):
    client = _FakeClient()
    client.partner_error = RemoteApiError(500, "partners down")
    sync = RemoteSyncClient(client, server_index)
    asyncio.run(sync.sync())
    asyncio.run(sync.sync())

    assert client.delta_calls[0][1] == ["user-1"]


def test_remote_failure_raises_and_keeps_index(server_index):
    client = _FakeClient()
    client.assets = [_asset("r1", b"one")]
    sync = RemoteSyncClient(client, server_index)
    asyncio.run(sync.sync())
    before = server_index.get_sync_metadata()

    client.user_error = RemoteApiError(401, "unauthorized")
    with pytest.raises(RemoteSyncFailed):
        asyncio.run(sync.sync())

    assert server_index.count() == 1
    assert server_index.get_sync_metadata() == before
    assert not sync.is_syncing


def test_busy_sync_returns_none(server_index):
    sync = RemoteSyncClient(_FakeClient(), server_index)
    sync._lock.acquire()
    try:
        assert asyncio.run(sync.sync()) is None
    finally:
        sync._lock.release()
