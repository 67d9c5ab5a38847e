import pytest

from assetsync.core.errors import StoreWriteFailed
from assetsync.core.models import HashResult, PresenceUpdate, SyncStatus


def test_upsert_is_idempotent_apart_from_calculated_at(hash_cache):
    hash_cache.upsert_multi_resource_hash("A", "aa", 10, raw_hash="rr", raw_size=20, has_raw=True)
    hash_cache.update_presence_flags("A", True, True)
    first = hash_cache.get("A")

    hash_cache.upsert_multi_resource_hash("A", "aa", 10, raw_hash="rr", raw_size=20, has_raw=True)
    second = hash_cache.get("A")

    assert first.model_dump(exclude={"calculated_at"}) == second.model_dump(exclude={"calculated_at"})
    assert second.primary_on_server is True
    assert second.raw_on_server is True


def test_changed_hash_resets_only_its_flag(hash_cache):
    hash_cache.upsert_multi_resource_hash("A", "aa", 10, raw_hash="rr", raw_size=20, has_raw=True)
    hash_cache.update_presence_flags("A", True, True)

    hash_cache.upsert_multi_resource_hash("A", "aa", 10, raw_hash="r2", raw_size=21, has_raw=True)
    rec = hash_cache.get("A")
    assert rec.primary_on_server is True
    assert rec.raw_on_server is False
    assert rec.raw_hash == "r2"

    hash_cache.upsert_multi_resource_hash("A", "bb", 11, raw_hash="r2", raw_size=21, has_raw=True)
    assert hash_cache.get("A").primary_on_server is False


def test_no_raw_never_carries_raw_state(hash_cache):
    hash_cache.upsert_multi_resource_hash("A", "aa", 10, raw_hash="ignored", raw_size=5, has_raw=False)
    hash_cache.update_presence_flags("A", True, True)

    rec = hash_cache.get("A")
    assert rec.raw_hash is None
    assert rec.raw_file_size is None
    assert rec.raw_on_server is False
    assert rec.fully_on_server is True


def test_presence_update_keeps_hashes_and_sets_checked_at(hash_cache):
    hash_cache.upsert_multi_resource_hash("A", "aa", 10)
    assert hash_cache.get("A").checked_at is None

    hash_cache.update_presence_flags("A", True, False)
    rec = hash_cache.get("A")
    assert rec.primary_hash == "aa"
    assert rec.primary_on_server is True
    assert rec.checked_at is not None


def test_assets_needing_hash_keeps_order(hash_cache):
    hash_cache.upsert_multi_resource_hash("B", "bb", 1)
    assert hash_cache.assets_needing_hash(["C", "B", "A", "C"]) == ["C", "A"]


def test_records_not_fully_on_server_applies_completeness_rule(hash_cache):
    hash_cache.batch_upsert(
        [
            HashResult(asset_id="plain_on", primary_hash="p1"),
            HashResult(asset_id="plain_off", primary_hash="p2"),
            HashResult(asset_id="raw_half", primary_hash="p3", raw_hash="r3", has_raw=True),
            HashResult(asset_id="raw_full", primary_hash="p4", raw_hash="r4", has_raw=True),
        ]
    )
    hash_cache.batch_update_presence(
        [
            PresenceUpdate(asset_id="plain_on", primary_on_server=True),
            PresenceUpdate(asset_id="raw_half", primary_on_server=True, raw_on_server=False),
            PresenceUpdate(asset_id="raw_full", primary_on_server=True, raw_on_server=True),
        ]
    )

    ids = {r.asset_id for r in hash_cache.records_not_fully_on_server()}
    assert ids == {"plain_off", "raw_half"}


def test_failed_write_rolls_back_whole_transaction(hash_cache, monkeypatch):
    hash_cache.upsert_multi_resource_hash("kept", "k", 1)

    import assetsync.store.hash_cache as module

    # The upsert half succeeds, the presence half fails.
    monkeypatch.setattr(module, "_PRESENCE_SQL", module._PRESENCE_SQL.replace("UPDATE hash_cache", "UPDATE no_such_table"))
    with pytest.raises(StoreWriteFailed):
        hash_cache.batch_upsert_on_server(
            [HashResult(asset_id="x", primary_hash="x"), HashResult(asset_id="y", primary_hash="y")]
        )

    assert hash_cache.all_ids() == {"kept"}


def test_delete_orphans(hash_cache):
    for aid in ("A", "B", "C"):
        hash_cache.upsert_multi_resource_hash(aid, aid.lower(), 1)
    assert hash_cache.delete_orphans(["B", "C", "missing"]) == 2
    assert hash_cache.all_ids() == {"A"}


def test_all_sync_status_unchecked_depends_on_server_cache(hash_cache):
    hash_cache.upsert_multi_resource_hash("A", "aa", 1)

    assert hash_cache.all_sync_status({}, has_server_cache=True) == {"A": SyncStatus.PENDING}
    assert hash_cache.all_sync_status({}, has_server_cache=False) == {"A": SyncStatus.NOT_UPLOADED}
    assert hash_cache.all_sync_status({"A": {"primary"}}, has_server_cache=False) == {"A": SyncStatus.UPLOADED}
