import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from assetsync.cli import main as cli_module
from assetsync.core.config import AppConfig
from assetsync.services import build_services

runner = CliRunner()


class _OfflineClient:
    """Transport that must never be reached in these tests."""

    def __getattr__(self, name):
        raise AssertionError(f"unexpected remote call: {name}")


@pytest.fixture
def services(monkeypatch, tmp_path: Path, library):
    cfg = AppConfig()
    cfg.database.path = str(tmp_path / "runtime" / "assetsync.db")
    cfg.logging.file = str(tmp_path / "runtime" / "service.log")
    built = build_services(cfg, library=library, client=_OfflineClient())
    monkeypatch.setattr(cli_module, "_build_services", lambda: built)
    monkeypatch.setattr(cli_module, "LAST_RUN_PATH", tmp_path / "runtime" / "last_run.json")
    return built


def test_config_show_masks_api_key(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    target.write_text("server:\n  url: https://photos.example.com\n  api_key: secret\n", encoding="utf-8")
    monkeypatch.setattr("assetsync.core.config.ensure_runtime_dirs", lambda _cfg: None)

    result = runner.invoke(cli_module.app, ["config-show", "--path", str(target)])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["server"]["api_key"] == "***"
    assert payload["server"]["url"] == "https://photos.example.com"


def test_reconcile_without_server_writes_last_run(services, library, tmp_path: Path):
    library.add("A", {"a.jpg": b"one"})

    result = runner.invoke(cli_module.app, ["reconcile", "--no-sync"])

    assert result.exit_code == 0
    summary = json.loads((tmp_path / "runtime" / "last_run.json").read_text(encoding="utf-8"))
    assert summary["reconcile"]["hashed"] == 1
    assert summary["reconcile"]["not_uploaded"] == 1


def test_purge_jobs_reports_count(services):
    services.ledger.record_result("A", "primary", "a.jpg", "r1")

    result = runner.invoke(cli_module.app, ["purge-jobs"])

    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"ok": True, "purged": 1}


def test_upload_with_nothing_pending(services):
    result = runner.invoke(cli_module.app, ["upload"])

    assert result.exit_code == 0
    assert json.loads(result.stdout)["note"] == "nothing_to_upload"
