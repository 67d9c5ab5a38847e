from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

PROJECT_ROOT = Path(os.environ.get("ASSETSYNC_HOME") or (Path.home() / ".assetsync")).expanduser()
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = PROJECT_ROOT / "config.yaml.example"
LAST_RUN_PATH = RUNTIME_DIR / "last_run.json"


class ServerConfig(BaseModel):
    url: str = ""
    api_key: str = ""
    timeout_sec: int = 60


class LibraryConfig(BaseModel):
    root: str = str(Path.home() / "Pictures")
    exclude_dirs: list[str] = Field(default_factory=lambda: [
        ".git",
        ".thumbnails",
        "__pycache__",
    ])
    exclude_hidden_dirs: bool = True
    exclude_hidden_files: bool = True
    # Optional text file listing favorite asset ids, one per line.
    favorites_file: str = ""


class EngineConfig(BaseModel):
    # Worker budgets per phase; kept small to bound in-flight buffers and request rate.
    hash_concurrency: int = Field(default=3, ge=1, le=32)
    check_concurrency: int = Field(default=5, ge=1, le=64)
    upload_concurrency: int = Field(default=2, ge=1, le=16)
    cloud_id_batch_size: int = Field(default=500, ge=1)
    full_sync_page_size: int = Field(default=10000, ge=1)
    chunk_size: int = Field(default=64 * 1024, ge=1024)
    max_upload_retries: int = Field(default=5, ge=0)


class SyncConfig(BaseModel):
    # 0 means disabled; positive values are seconds between scheduled runs.
    poll_interval_sec: int = Field(default=0, ge=0, le=86400)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")


class DatabaseConfig(BaseModel):
    path: str = str(RUNTIME_DIR / "assetsync.db")


class AppConfig(BaseModel):
    server: ServerConfig = Field(default_factory=ServerConfig)
    library: LibraryConfig = Field(default_factory=LibraryConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Web status API
    web_bind_host: str = "127.0.0.1"
    web_port: int = 8766


def normalize_server_url(value: str) -> str:
    raw = (value or "").strip()
    while raw.endswith("/"):
        raw = raw[:-1]
    if raw.endswith("/api"):
        raw = raw[: -len("/api")]
    return raw


def _expand_paths(cfg: AppConfig) -> AppConfig:
    cfg.logging.file = str(Path(cfg.logging.file).expanduser())
    cfg.database.path = str(Path(cfg.database.path).expanduser())
    return cfg


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = AppConfig.model_validate(data)
                _expand_paths(cfg)
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    cfg.server.url = normalize_server_url(cfg.server.url)
    _expand_paths(cfg)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
