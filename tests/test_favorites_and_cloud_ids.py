import asyncio

from assetsync.core.errors import RemoteApiError
from assetsync.engine.cloud_ids import CloudIdSync
from assetsync.engine.favorites import FavoriteSync


class _FakeClient:
    def __init__(self):
        self.favorite_calls: list[tuple[list[str], bool]] = []
        self.metadata_calls: list[dict[str, str]] = []
        self.fail_metadata_batches: set[int] = set()

    def update_assets_favorite(self, asset_ids, is_favorite):
        self.favorite_calls.append((list(asset_ids), is_favorite))

    def update_bulk_asset_metadata(self, cloud_ids_by_remote_id):
        index = len(self.metadata_calls)
        self.metadata_calls.append(dict(cloud_ids_by_remote_id))
        if index in self.fail_metadata_batches:
            raise RemoteApiError(500, "update_bulk_asset_metadata: boom")


def test_favorite_changes_are_pushed_in_two_groups(library, ledger):
    for aid in ("A", "B", "C"):
        library.add(aid, {f"{aid}.jpg": b"x"})
    ledger.record_result("A", "primary", "A.jpg", "rA", is_favorite=False)
    ledger.record_result("B", "primary", "B.jpg", "rB", is_favorite=True)
    ledger.record_result("C", "primary", "C.jpg", "rC", is_favorite=False)
    library.favorites = {"A": True, "B": False, "C": False}
    client = _FakeClient()

    result = asyncio.run(FavoriteSync(library, client, ledger).sync())

    assert result == {"favorited": 1, "unfavorited": 1}
    assert client.favorite_calls == [(["rA"], True), (["rB"], False)]
    assert dict((aid, fav) for aid, _, fav in ledger.favorite_states()) == {"A": True, "B": False, "C": False}


def test_favorite_sync_ignores_assets_gone_from_library(library, ledger):
    library.add("A", {"A.jpg": b"x"})
    ledger.record_result("A", "primary", "A.jpg", "rA")
    library.missing.add("A")
    client = _FakeClient()

    assert FavoriteSync(library, client, ledger).detect_changes() == []


def test_favorite_sync_busy_returns_none(library, ledger):
    sync = FavoriteSync(library, _FakeClient(), ledger)
    sync._lock.acquire()
    try:
        assert asyncio.run(sync.sync()) is None
    finally:
        sync._lock.release()


def test_cloud_id_sync_skips_library_without_cloud_ids(library, ledger):
    ledger.record_result("A", "primary", "A.jpg", "rA")
    client = _FakeClient()

    assert asyncio.run(CloudIdSync(library, client, ledger).sync()) == 0
    assert client.metadata_calls == []


def test_cloud_id_sync_batches_and_filters_incomplete_ids(library, ledger):
    library.supports_cloud_ids = True
    for aid, cloud_id in (("A", "g:1:h"), ("B", "g:2:"), ("C", None), ("D", "g:4:h"), ("E", "g:5:h")):
        ledger.record_result(aid, "primary", f"{aid}.jpg", f"r{aid}")
        library.cloud_ids[aid] = cloud_id
    ledger.record_result("A", "raw", "A.dng", "rA-raw")
    client = _FakeClient()
    client.fail_metadata_batches = {1}

    updated = asyncio.run(CloudIdSync(library, client, ledger, batch_size=2).sync())

    sent = {k: v for call in client.metadata_calls for k, v in call.items()}
    assert sent == {"rA": "g:1:h", "rD": "g:4:h", "rE": "g:5:h"}
    assert len(client.metadata_calls) == 2
    # The second batch failed; the first still counts.
    assert updated == len(client.metadata_calls[0])
