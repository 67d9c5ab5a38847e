from __future__ import annotations

import logging
import mimetypes
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from assetsync.core.models import ResourceType

logger = logging.getLogger("hash")

RAW_IDENTIFIERS = frozenset({"raw-image", "dng", "arw", "cr2", "cr3", "nef", "raf", "orf", "rw2"})
IMAGE_EXTENSIONS = frozenset({"jpg", "jpeg", "heic", "heif", "png", "gif", "webp", "tif", "tiff", "avif"})
VIDEO_EXTENSIONS = frozenset({"mov", "mp4", "m4v", "avi", "mkv", "3gp", "mts"})


def is_raw_identifier(value: str) -> bool:
    return (value or "").lower().lstrip(".") in RAW_IDENTIFIERS


@dataclass
class AssetResource:
    """One physical file backing an asset."""

    resource_type: ResourceType
    original_filename: str
    path: Path
    uti: str = ""

    @property
    def mime_type(self) -> str:
        guessed, _ = mimetypes.guess_type(self.original_filename)
        return guessed or "application/octet-stream"

    @property
    def size(self) -> int:
        return self.path.stat().st_size

    def open(self):
        return self.path.open("rb")

    def open_chunks(self, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        with self.open() as fp:
            for chunk in iter(lambda: fp.read(chunk_size), b""):
                yield chunk


@dataclass
class LocalAsset:
    asset_id: str
    resources: list[AssetResource] = field(default_factory=list)
    created_at: Optional[datetime] = None
    modified_at: Optional[datetime] = None
    is_favorite: bool = False


class MediaLibrary(ABC):
    """What the engine needs from the local media collection."""

    supports_cloud_ids = False

    @abstractmethod
    def list_current_local_identifiers(self) -> list[str]:
        ...

    @abstractmethod
    def resources_for(self, asset_id: str) -> list[AssetResource]:
        ...

    @abstractmethod
    def exists_locally(self, asset_id: str) -> bool:
        ...

    def get_asset(self, asset_id: str) -> Optional[LocalAsset]:
        resources = self.resources_for(asset_id)
        if not resources:
            return None
        return LocalAsset(asset_id=asset_id, resources=resources)

    def cloud_identifiers_for(self, asset_ids: list[str]) -> dict[str, Optional[str]]:
        """Map local ids to platform cloud ids; ``None`` marks a failed lookup."""
        raise NotImplementedError("cloud_ids_not_supported")

    def favorite_states(self, asset_ids: list[str]) -> dict[str, bool]:
        return {}


class FilesystemMediaLibrary(MediaLibrary):
    """Media files under a root directory, grouped by directory and stem.

    ``IMG_0001.JPG`` and ``IMG_0001.DNG`` in the same folder become one asset
    with a primary and a RAW resource. The asset id is the relative
    ``dir/stem`` path. Favorites come from an optional text file listing one
    asset id per line.
    """

    def __init__(
        self,
        root: str,
        exclude_dirs: Optional[list[str]] = None,
        exclude_hidden_dirs: bool = True,
        exclude_hidden_files: bool = True,
        favorites_file: str = "",
    ):
        self.root = Path(root).expanduser()
        self.exclude_dirs = set(exclude_dirs or [])
        self.exclude_hidden_dirs = exclude_hidden_dirs
        self.exclude_hidden_files = exclude_hidden_files
        self.favorites_file = favorites_file
        self._groups: Optional[dict[str, list[Path]]] = None

    @classmethod
    def from_config(cls, cfg) -> "FilesystemMediaLibrary":
        lib = cfg.library
        return cls(
            root=lib.root,
            exclude_dirs=lib.exclude_dirs,
            exclude_hidden_dirs=lib.exclude_hidden_dirs,
            exclude_hidden_files=lib.exclude_hidden_files,
            favorites_file=lib.favorites_file,
        )

    def refresh(self) -> None:
        self._groups = None

    def _scan(self) -> dict[str, list[Path]]:
        if self._groups is not None:
            return self._groups

        groups: dict[str, list[Path]] = {}
        if not self.root.exists():
            logger.warning("library_root_missing root=%s", self.root)
            self._groups = groups
            return groups

        for root, dirnames, filenames in os.walk(self.root):
            dirnames[:] = [
                d for d in dirnames
                if d not in self.exclude_dirs and not (self.exclude_hidden_dirs and d.startswith("."))
            ]
            root_path = Path(root)
            for name in sorted(filenames):
                if self.exclude_hidden_files and name.startswith("."):
                    continue
                full = root_path / name
                ext = full.suffix.lower().lstrip(".")
                if ext not in IMAGE_EXTENSIONS and ext not in VIDEO_EXTENSIONS and ext not in RAW_IDENTIFIERS:
                    continue
                rel = full.relative_to(self.root).with_suffix("").as_posix()
                groups.setdefault(rel, []).append(full)

        self._groups = groups
        logger.info("library_scanned root=%s assets=%s", self.root, len(groups))
        return groups

    def list_current_local_identifiers(self) -> list[str]:
        return sorted(self._scan())

    def exists_locally(self, asset_id: str) -> bool:
        paths = self._scan().get(asset_id) or []
        return any(p.exists() for p in paths)

    def resources_for(self, asset_id: str) -> list[AssetResource]:
        out: list[AssetResource] = []
        for path in self._scan().get(asset_id) or []:
            ext = path.suffix.lower().lstrip(".")
            if ext in RAW_IDENTIFIERS:
                rtype = ResourceType.RAW
            elif ext in VIDEO_EXTENSIONS:
                rtype = ResourceType.VIDEO
            else:
                rtype = ResourceType.PRIMARY
            out.append(AssetResource(resource_type=rtype, original_filename=path.name, path=path, uti=ext))
        # primary/video first so uploads and hashing see the main file first
        out.sort(key=lambda r: r.resource_type == ResourceType.RAW)
        return out

    def get_asset(self, asset_id: str) -> Optional[LocalAsset]:
        resources = self.resources_for(asset_id)
        if not resources:
            return None
        stat = resources[0].path.stat()
        return LocalAsset(
            asset_id=asset_id,
            resources=resources,
            created_at=datetime.fromtimestamp(stat.st_ctime, tz=timezone.utc),
            modified_at=datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc),
            is_favorite=asset_id in self._favorite_ids(),
        )

    def _favorite_ids(self) -> set[str]:
        if not self.favorites_file:
            return set()
        p = Path(self.favorites_file).expanduser()
        if not p.exists():
            return set()
        lines = p.read_text(encoding="utf-8").splitlines()
        return {line.strip() for line in lines if line.strip() and not line.startswith("#")}

    def favorite_states(self, asset_ids: list[str]) -> dict[str, bool]:
        favorites = self._favorite_ids()
        groups = self._scan()
        return {asset_id: asset_id in favorites for asset_id in asset_ids if asset_id in groups}
