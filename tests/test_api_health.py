import asyncio
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from assetsync.core.config import AppConfig
from assetsync.core.errors import RemoteApiError
from assetsync.remote.models import UserInfo
from assetsync.services import build_services
from assetsync.web import api as api_module


class _FakeClient:
    def __init__(self):
        self.user_error: Exception | None = None

    def get_current_user(self):
        if self.user_error is not None:
            raise self.user_error
        return UserInfo(id="user-1")

    def fetch_partner_user_ids(self):
        return []

    def fetch_full_sync_page(self, user_id, limit, last_id, updated_until):
        return []


def _build_client() -> TestClient:
    app = FastAPI()
    app.include_router(api_module.router)
    return TestClient(app)


def _cfg(tmp_path: Path) -> AppConfig:
    cfg = AppConfig()
    cfg.database.path = str(tmp_path / "runtime" / "assetsync.db")
    cfg.logging.file = str(tmp_path / "runtime" / "service.log")
    cfg.library.root = str(tmp_path / "media")
    return cfg


@pytest.fixture
def services(monkeypatch, tmp_path: Path, library):
    fake = _FakeClient()
    built = build_services(_cfg(tmp_path), library=library, client=fake)
    monkeypatch.setattr(api_module, "get_services", lambda: built)
    return built


def test_healthz_returns_alive():
    client = _build_client()
    resp = client.get("/api/healthz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["status"] == "alive"
    assert "checked_at" in payload


def test_readyz_returns_200_when_checks_pass(monkeypatch, tmp_path: Path):
    cfg = _cfg(tmp_path)
    cfg.server.url = "https://photos.example.com"
    cfg.server.api_key = "key"

    monkeypatch.setattr(api_module, "load_config", lambda: cfg)
    monkeypatch.setattr(
        api_module,
        "_scheduler_state_snapshot",
        lambda: {
            "running": True,
            "enabled": True,
            "configured_interval_sec": 300,
            "effective_interval_sec": 300,
            "last_started_at": None,
            "last_finished_at": None,
            "next_run_at": None,
            "next_run_in_sec": None,
            "last_result": "success",
            "last_error": None,
            "run_count": 1,
            "skipped_busy_count": 0,
        },
    )

    client = _build_client()
    resp = client.get("/api/readyz")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["checks"]["config_load"] is True
    assert payload["checks"]["database_parent_ready"] is True
    assert payload["checks"]["server_configured"] is True
    assert payload["checks"]["scheduler_running"] is True
    assert payload["errors"] == []


def test_readyz_returns_503_when_config_load_fails(monkeypatch):
    def _raise_load_config():
        raise RuntimeError("boom")

    monkeypatch.setattr(api_module, "load_config", _raise_load_config)
    monkeypatch.setattr(api_module, "_scheduler_state_snapshot", lambda: {"running": False, "enabled": False})

    client = _build_client()
    resp = client.get("/api/readyz")
    assert resp.status_code == 503
    payload = resp.json()
    assert payload["ok"] is False
    assert payload["checks"]["config_load"] is False
    assert any("config_load_failed" in err for err in payload["errors"])


def test_status_reports_counts_and_index(services):
    services.hash_cache.upsert_multi_resource_hash("A", "aa", 1)
    services.engine.load_cached_status()

    resp = _build_client().get("/api/status")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["counts"]["not_uploaded"] == 1
    assert payload["hash_cache"]["total"] == 1
    assert payload["progress"]["is_processing"] is False
    assert payload["server_index"]["last_sync_type"] is None


def test_server_sync_action_runs_full_sync(services):
    resp = _build_client().post("/api/actions/server-sync")
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["ok"] is True
    assert payload["sync_type"] == "full"
    assert services.server_index.get_sync_metadata().remote_user_id == "user-1"


def test_server_sync_action_returns_409_when_busy(services):
    services.remote_sync._lock.acquire()
    try:
        resp = _build_client().post("/api/actions/server-sync")
    finally:
        services.remote_sync._lock.release()
    assert resp.status_code == 409
    assert resp.json()["detail"] == "sync_busy"


def test_server_sync_action_maps_remote_failure_to_502(services):
    services.client.user_error = RemoteApiError(401, "unauthorized")
    resp = _build_client().post("/api/actions/server-sync")
    assert resp.status_code == 502
    assert "remote_sync_failed" in resp.json()["detail"]


def test_stop_action_without_run(services):
    resp = _build_client().post("/api/actions/stop", params={"hard": True})
    assert resp.status_code == 200
    assert resp.json() == {"ok": True, "was_processing": False, "mode": "hard"}


@pytest.fixture
def scheduler_state(monkeypatch):
    state = {"run_count": 0, "skipped_busy_count": 0}
    monkeypatch.setattr(api_module, "_scheduler_state", state)
    return state


def test_due_cycle_skips_while_sync_busy(services, scheduler_state):
    services.remote_sync._lock.acquire()
    try:
        outcome = asyncio.run(api_module._run_due_cycle())
    finally:
        services.remote_sync._lock.release()

    assert outcome == "skipped_busy"
    assert scheduler_state["skipped_busy_count"] == 1
    assert scheduler_state["last_error"] == "sync_busy"
    assert scheduler_state["run_count"] == 0


def test_due_cycle_runs_reconcile_and_counts(services, scheduler_state, library):
    library.add("A", {"a.jpg": b"one"})

    outcome = asyncio.run(api_module._run_due_cycle())

    assert outcome == "success"
    assert scheduler_state["run_count"] == 1
    assert scheduler_state["last_error"] is None
    assert services.hash_cache.stats()["total"] == 1


def test_due_cycle_records_failure(services, scheduler_state, monkeypatch):
    async def _boom(_services):
        raise RuntimeError("disk gone")

    monkeypatch.setattr(api_module, "_run_scheduled_cycle", _boom)

    outcome = asyncio.run(api_module._run_due_cycle())

    assert outcome == "failed"
    assert scheduler_state["run_count"] == 1
    assert scheduler_state["last_result"] == "failed"
    assert scheduler_state["last_error"] == "disk gone"
