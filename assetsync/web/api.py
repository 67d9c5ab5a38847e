from __future__ import annotations

import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from assetsync.core.config import load_config
from assetsync.core.errors import AssetSyncError
from assetsync.services import Services, build_services

router = APIRouter(prefix="/api")

SERVICES_LOCK = threading.Lock()
SCHEDULER_STATE_LOCK = threading.Lock()
SCHEDULER_POLL_GRANULARITY_SEC = 1
SCHEDULER_MIN_INTERVAL_SEC = 10
SCHEDULER_MAX_INTERVAL_SEC = 86400

_services: Services | None = None
_scheduler_task: asyncio.Task | None = None
_scheduler_stop_event: asyncio.Event | None = None
_scheduler_state: dict[str, object] = {
    "running": False,
    "enabled": False,
    "configured_interval_sec": 0,
    "effective_interval_sec": 0,
    "last_started_at": None,
    "last_finished_at": None,
    "last_result": None,
    "last_error": None,
    "next_run_at": None,
    "skipped_busy_count": 0,
    "run_count": 0,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_int(value: object, default: int = 0) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _as_float(value: object) -> float | None:
    if value is None:
        return None
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return None


def _sanitize_poll_interval(raw_value: object) -> int:
    raw = _as_int(raw_value, 0)
    if raw <= 0:
        return 0
    return min(max(raw, SCHEDULER_MIN_INTERVAL_SEC), SCHEDULER_MAX_INTERVAL_SEC)


def _iso_from_ts(ts: object) -> str | None:
    value = _as_float(ts)
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()


def get_services() -> Services:
    """Process-wide services, built on first use."""
    global _services
    with SERVICES_LOCK:
        if _services is None:
            _services = build_services(load_config())
            _services.engine.load_cached_status()
        return _services


def reset_services() -> None:
    global _services
    with SERVICES_LOCK:
        _services = None


def _scheduler_state_update(**kwargs) -> None:
    with SCHEDULER_STATE_LOCK:
        _scheduler_state.update(kwargs)


def _scheduler_state_snapshot() -> dict[str, object]:
    with SCHEDULER_STATE_LOCK:
        snap = dict(_scheduler_state)

    now_ts = time.time()
    next_run_at_raw = snap.get("next_run_at")
    next_run_at = _as_float(next_run_at_raw)
    next_run_in_sec = None if next_run_at is None else max(int(next_run_at - now_ts), 0)

    return {
        "running": bool(snap.get("running")),
        "enabled": bool(snap.get("enabled")),
        "configured_interval_sec": _as_int(snap.get("configured_interval_sec"), 0),
        "effective_interval_sec": _as_int(snap.get("effective_interval_sec"), 0),
        "last_started_at": _iso_from_ts(snap.get("last_started_at")),
        "last_finished_at": _iso_from_ts(snap.get("last_finished_at")),
        "next_run_at": _iso_from_ts(next_run_at_raw),
        "next_run_in_sec": next_run_in_sec,
        "last_result": snap.get("last_result"),
        "last_error": snap.get("last_error"),
        "run_count": _as_int(snap.get("run_count"), 0),
        "skipped_busy_count": _as_int(snap.get("skipped_busy_count"), 0),
    }


async def _wait_stop_or_timeout(stop_event: asyncio.Event, timeout_sec: float) -> bool:
    if timeout_sec <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_sec)
        return True
    except asyncio.TimeoutError:
        return False


def _build_readiness_payload() -> dict:
    checks: dict[str, bool] = {
        "config_load": False,
        "database_parent_ready": False,
        "log_parent_ready": False,
        "server_configured": False,
        "scheduler_running": False,
        "scheduler_enabled": False,
    }
    warnings: list[str] = []
    errors: list[str] = []
    scheduler = _scheduler_state_snapshot()
    checks["scheduler_running"] = bool(scheduler.get("running"))
    checks["scheduler_enabled"] = bool(scheduler.get("enabled"))

    cfg = None
    try:
        cfg = load_config()
        checks["config_load"] = True
    except Exception as e:
        errors.append(f"config_load_failed: {e}")

    if cfg is not None:
        checks["server_configured"] = bool(cfg.server.url and cfg.server.api_key)
        if not checks["server_configured"]:
            warnings.append("server_not_configured")

        try:
            Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
            checks["database_parent_ready"] = True
        except OSError as e:
            errors.append(f"database_parent_unavailable: {e}")

        try:
            Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
            checks["log_parent_ready"] = True
        except OSError as e:
            errors.append(f"log_parent_unavailable: {e}")

    if checks["scheduler_enabled"] and not checks["scheduler_running"]:
        warnings.append("scheduler_enabled_but_not_running")

    ok = checks["config_load"] and checks["database_parent_ready"] and checks["log_parent_ready"]
    return {
        "ok": ok,
        "checked_at": _now_iso(),
        "checks": checks,
        "warnings": warnings,
        "errors": errors,
        "scheduler": scheduler,
    }


def _scheduler_state_bump(counter: str, **kwargs) -> None:
    with SCHEDULER_STATE_LOCK:
        _scheduler_state[counter] = _as_int(_scheduler_state.get(counter), 0) + 1
        _scheduler_state.update(kwargs)


async def _run_scheduled_cycle(services: Services) -> dict[str, Any]:
    summary: dict[str, Any] = {}
    if services.cfg.server.url:
        result = await services.remote_sync.sync()
        summary["server_sync"] = result.model_dump(mode="json") if result else None
    summary["reconcile"] = await services.engine.run()
    summary["favorites"] = await services.favorites.sync()
    return summary


async def _run_due_cycle() -> str:
    """Run one scheduled pass and record its outcome; returns the result label."""
    logger = logging.getLogger("scheduler")
    services = get_services()
    if services.remote_sync.is_syncing or services.engine.is_processing:
        _scheduler_state_bump(
            "skipped_busy_count",
            last_finished_at=time.time(),
            last_result="skipped_busy",
            last_error="sync_busy",
        )
        logger.warning("scheduled_run_skipped sync_busy")
        return "skipped_busy"

    _scheduler_state_update(last_started_at=time.time(), last_result="running", last_error=None)
    try:
        summary = await _run_scheduled_cycle(services)
    except Exception as e:
        _scheduler_state_bump("run_count", last_finished_at=time.time(), last_result="failed", last_error=str(e))
        logger.exception("scheduled_run_failed: %s", e)
        return "failed"

    reconcile = summary.get("reconcile") or {}
    _scheduler_state_bump("run_count", last_finished_at=time.time(), last_result="success", last_error=None)
    logger.info(
        "scheduled_run_completed hashed=%s checked=%s not_uploaded=%s",
        reconcile.get("hashed", 0),
        reconcile.get("checked", 0),
        reconcile.get("not_uploaded", 0),
    )
    return "success"


async def _scheduler_loop(stop_event: asyncio.Event) -> None:
    logger = logging.getLogger("scheduler")
    armed_interval = 0
    next_run_at_ts: float | None = None
    _scheduler_state_update(running=True, last_error=None, last_result=None)
    logger.info("scheduler_started")

    try:
        while not stop_event.is_set():
            configured = _as_int(load_config().sync.poll_interval_sec, 0)
            interval = _sanitize_poll_interval(configured)
            _scheduler_state_update(
                enabled=interval > 0,
                configured_interval_sec=configured,
                effective_interval_sec=interval,
            )

            # Re-arm whenever the schedule is switched on, off or resized.
            if interval != armed_interval:
                armed_interval = interval
                next_run_at_ts = time.time() + interval if interval else None
                _scheduler_state_update(next_run_at=next_run_at_ts)

            if next_run_at_ts is None or time.time() < next_run_at_ts:
                await _wait_stop_or_timeout(stop_event, SCHEDULER_POLL_GRANULARITY_SEC)
                continue

            await _run_due_cycle()
            next_run_at_ts = time.time() + interval
            _scheduler_state_update(next_run_at=next_run_at_ts)
    finally:
        _scheduler_state_update(running=False, next_run_at=None)
        logger.info("scheduler_stopped")


def start_scheduler() -> None:
    global _scheduler_task, _scheduler_stop_event
    if _scheduler_task and not _scheduler_task.done():
        return

    _scheduler_stop_event = asyncio.Event()
    _scheduler_task = asyncio.create_task(_scheduler_loop(_scheduler_stop_event), name="assetsync_scheduler")


async def stop_scheduler() -> None:
    global _scheduler_task, _scheduler_stop_event
    if _scheduler_stop_event is not None:
        _scheduler_stop_event.set()

    if _services is not None:
        _services.engine.cancel()

    if _scheduler_task is not None:
        try:
            await _scheduler_task
        except Exception:
            logging.getLogger("scheduler").exception("scheduler_stop_error")

    _scheduler_task = None
    _scheduler_stop_event = None
    _scheduler_state_update(running=False, next_run_at=None)


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/readyz")
def readyz():
    payload = _build_readiness_payload()
    return JSONResponse(status_code=200 if payload["ok"] else 503, content=payload)


@router.get("/status")
def status():
    services = get_services()
    meta = services.server_index.get_sync_metadata()
    return {
        "ok": True,
        "checked_at": _now_iso(),
        "counts": services.engine.status_counts(),
        "progress": services.engine.progress.model_dump(),
        "hash_cache": services.hash_cache.stats(),
        "upload_jobs": services.ledger.job_counts(),
        "uploaded_assets": services.ledger.uploaded_count(),
        "server_index": {
            "count": services.server_index.count(),
            "syncing": services.remote_sync.is_syncing,
            "last_sync_at": _iso_from_ts(meta.last_sync_time) if meta else None,
            "last_sync_type": meta.last_sync_type.value if meta and meta.last_sync_type else None,
            "total_assets": meta.total_assets if meta else 0,
        },
    }


@router.get("/status/scheduler")
def scheduler_status():
    return {
        "ok": True,
        "checked_at": _now_iso(),
        **_scheduler_state_snapshot(),
    }


@router.post("/actions/server-sync")
async def server_sync(full: bool = False):
    """Pull the remote index now; 409 while another sync runs."""
    services = get_services()
    if services.remote_sync.is_syncing:
        raise HTTPException(status_code=409, detail="sync_busy")
    try:
        result = await services.remote_sync.sync(force_full=full)
    except AssetSyncError as e:
        raise HTTPException(status_code=502, detail=str(e))
    if result is None:
        raise HTTPException(status_code=409, detail="sync_busy")
    return {"ok": True, **result.model_dump(mode="json")}


@router.post("/actions/reconcile")
async def reconcile():
    services = get_services()
    task = services.engine.start_background_processing()
    if task is None:
        raise HTTPException(status_code=409, detail="reconcile_busy")
    return {"ok": True, "started": True, "progress": services.engine.progress.model_dump()}


@router.post("/actions/stop")
async def stop(hard: bool = False):
    services = get_services()
    was_processing = services.engine.is_processing
    if hard:
        services.engine.cancel()
    else:
        services.engine.stop_processing()
    return {"ok": True, "was_processing": was_processing, "mode": "hard" if hard else "soft"}
