from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from assetsync.core.config import (
    DEFAULT_CONFIG_PATH,
    LAST_RUN_PATH,
    load_config,
    normalize_server_url,
    save_config,
)
from assetsync.core.errors import AssetSyncError
from assetsync.core.logging_setup import setup_logging
from assetsync.core.models import SyncStatus
from assetsync.services import Services, build_services

app = typer.Typer(add_completion=False)
console = Console()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _iso_from_ts(ts: float | None) -> str:
    if not ts:
        return "-"
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="seconds")


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def _write_last_run(summary: dict) -> None:
    LAST_RUN_PATH.parent.mkdir(parents=True, exist_ok=True)
    LAST_RUN_PATH.write_text(json.dumps(summary, ensure_ascii=False, indent=2, default=str), encoding="utf-8")


def _build_services() -> Services:
    cfg = load_config()
    setup_logging(cfg.logging.level, cfg.logging.file, console=False)
    return build_services(cfg)


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml (API key masked)."""
    cfg = load_config(path)
    data = cfg.model_dump()
    if data["server"]["api_key"]:
        data["server"]["api_key"] = "***"
    _print_json(data)


@app.command("config-set-server")
def config_set_server(
    url: str = typer.Option(..., "--url", help="Immich server URL, with or without /api."),
    api_key: str = typer.Option(..., "--api-key", help="Immich API key."),
):
    """Set the remote server URL and API key."""
    cfg = load_config()
    cfg.server.url = normalize_server_url(url)
    cfg.server.api_key = api_key.strip()
    save_config(cfg)
    _print_json({"ok": True, "url": cfg.server.url, "api_key_set": bool(cfg.server.api_key)})


@app.command()
def status():
    """Show local cache, ledger and server index summary."""
    services = _build_services()
    cfg = services.cfg
    services.engine.load_cached_status()
    counts = services.engine.status_counts()
    hash_stats = services.hash_cache.stats()
    meta = services.server_index.get_sync_metadata()

    table = Table(title="assetsync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(DEFAULT_CONFIG_PATH))
    table.add_row("server", cfg.server.url or "(unset)")
    table.add_row("api_key_set", "yes" if cfg.server.api_key else "no")
    table.add_row("library_root", cfg.library.root)
    table.add_row("hash_cache", f"{hash_stats['total']} assets ({hash_stats['with_raw']} with RAW)")
    for key in (SyncStatus.UPLOADED, SyncStatus.NOT_UPLOADED, SyncStatus.PENDING, SyncStatus.ERROR):
        table.add_row(f"status.{key.value}", str(counts[key.value]))
    table.add_row("uploaded_assets", str(services.ledger.uploaded_count()))
    jobs = services.ledger.job_counts()
    table.add_row("upload_jobs", " ".join(f"{k}={v}" for k, v in jobs.items()))
    table.add_row("server_index", str(services.server_index.count()))
    if meta is not None:
        table.add_row("last_sync", f"{_iso_from_ts(meta.last_sync_time)} ({meta.last_sync_type.value if meta.last_sync_type else '-'})")
    else:
        table.add_row("last_sync", "never")
    poll_interval = int(cfg.sync.poll_interval_sec or 0)
    table.add_row("auto_sync", "on" if poll_interval > 0 else "off")
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command("server-sync")
def server_sync(full: bool = typer.Option(False, "--full", help="Force a full re-pull of the server index.")):
    """Pull the remote asset index (delta when possible)."""
    services = _build_services()
    try:
        result = asyncio.run(services.remote_sync.sync(force_full=full))
    except AssetSyncError as e:
        _print_json({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    if result is None:
        _print_json({"ok": False, "error": "sync_busy"})
        raise typer.Exit(1)
    _print_json({"ok": True, **result.model_dump(mode="json")})


@app.command()
def reconcile(
    sync_first: bool = typer.Option(True, "--sync/--no-sync", help="Run a server sync before reconciling."),
):
    """Hash new assets and classify every asset as uploaded / not uploaded."""
    services = _build_services()

    async def _run() -> dict[str, Any]:
        out: dict[str, Any] = {"started_at": _now_iso()}
        if sync_first and services.cfg.server.url:
            result = await services.remote_sync.sync()
            out["server_sync"] = result.model_dump(mode="json") if result else None
        services.engine.load_cached_status()
        out["reconcile"] = await services.engine.run()
        out["finished_at"] = _now_iso()
        return out

    try:
        summary = asyncio.run(_run())
    except AssetSyncError as e:
        _print_json({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    _write_last_run(summary)
    _print_json(summary)


@app.command()
def upload(limit: int = typer.Option(0, "--limit", min=0, help="Upload at most N assets (0 = all).")):
    """Upload every asset currently classified as not uploaded."""
    services = _build_services()
    statuses = services.engine.load_cached_status()
    ids = sorted(aid for aid, st in statuses.items() if st == SyncStatus.NOT_UPLOADED)
    if limit:
        ids = ids[:limit]
    if not ids:
        _print_json({"ok": True, "assets": 0, "note": "nothing_to_upload"})
        return
    stats = asyncio.run(services.uploader.upload_assets(ids))
    _print_json({"ok": stats["failed"] == 0, **stats})
    if stats["failed"]:
        raise typer.Exit(2)


@app.command("retry-failed")
def retry_failed(limit: int = typer.Option(500, "--limit", min=1)):
    """Retry ledger jobs that failed or never finished."""
    services = _build_services()
    stats = asyncio.run(services.uploader.retry_failed(limit=limit))
    _print_json({"ok": stats["failed"] == 0, **stats})


@app.command("favorites-sync")
def favorites_sync():
    """Push local favorite changes of uploaded assets to the server."""
    services = _build_services()
    result = asyncio.run(services.favorites.sync())
    _print_json({"ok": result is not None, **(result or {})})


@app.command("cloud-id-sync")
def cloud_id_sync():
    """Attach cloud ids to uploaded assets as server metadata."""
    services = _build_services()
    updated = asyncio.run(services.cloud_ids.sync())
    _print_json({"ok": True, "updated": updated})


@app.command("clear-cache")
def clear_cache(
    hashes: bool = typer.Option(True, "--hashes/--no-hashes", help="Clear the local hash cache."),
    server: bool = typer.Option(True, "--server/--no-server", help="Clear the server index and sync metadata."),
    ledger: bool = typer.Option(False, "--ledger/--no-ledger", help="Also forget upload history."),
):
    """Clear local caches; the next reconcile re-hashes and the next sync is full."""
    services = _build_services()
    if hashes:
        services.hash_cache.clear()
    if server:
        services.server_index.clear()
    if ledger:
        services.ledger.clear()
    _print_json({"ok": True, "hashes": hashes, "server": server, "ledger": ledger})


@app.command("purge-jobs")
def purge_jobs():
    """Delete completed upload jobs; uploaded asset records are kept."""
    services = _build_services()
    purged = asyncio.run(services.uploader.purge_completed())
    _print_json({"ok": True, "purged": purged})


def main():
    app()


if __name__ == "__main__":
    main()
