from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


class SyncStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CHECKING = "checking"
    UPLOADED = "uploaded"
    NOT_UPLOADED = "not_uploaded"
    ERROR = "error"


class ResourceType(str, Enum):
    PRIMARY = "primary"
    VIDEO = "video"
    RAW = "raw"


# Any of these confirms the primary side of an asset.
PRIMARY_RESOURCE_TYPES = frozenset({ResourceType.PRIMARY.value, ResourceType.VIDEO.value})


class UploadJobStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncType(str, Enum):
    FULL = "full"
    DELTA = "delta"


class HashResult(BaseModel):
    asset_id: str
    primary_hash: str
    primary_file_size: int = 0
    raw_hash: Optional[str] = None
    raw_file_size: Optional[int] = None
    has_raw: bool = False


class PresenceUpdate(BaseModel):
    asset_id: str
    primary_on_server: bool
    raw_on_server: bool = False


class HashCacheRecord(BaseModel):
    asset_id: str
    primary_hash: str
    primary_file_size: int = 0
    raw_hash: Optional[str] = None
    raw_file_size: Optional[int] = None
    has_raw: bool = False
    primary_on_server: bool = False
    raw_on_server: bool = False
    calculated_at: float
    checked_at: Optional[float] = None

    @property
    def fully_on_server(self) -> bool:
        return is_fully_on_server(self.has_raw, self.primary_on_server, self.raw_on_server)


class UploadJobRecord(BaseModel):
    asset_id: str
    resource_type: str
    filename: str
    status: UploadJobStatus
    retry_count: int = 0
    remote_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: float
    updated_at: float


class UploadedAssetRecord(BaseModel):
    asset_id: str
    resource_type: str
    filename: str
    remote_id: str
    file_size: int = 0
    is_duplicate: bool = False
    is_favorite: bool = False
    uploaded_at: float


class ServerAssetIndexRecord(BaseModel):
    remote_id: str
    checksum: str
    original_filename: Optional[str] = None
    asset_type: Optional[str] = None
    updated_at: Optional[str] = None
    cloud_id: Optional[str] = None


class SyncMetadata(BaseModel):
    last_sync_time: Optional[float] = None
    last_sync_type: Optional[SyncType] = None
    remote_user_id: Optional[str] = None
    total_assets: int = 0


def is_fully_on_server(has_raw: bool, primary_on_server: bool, raw_on_server: bool) -> bool:
    """Completeness rule: a RAW-bearing asset needs both resources remote, others only the primary."""
    if has_raw:
        return primary_on_server and raw_on_server
    return primary_on_server
