"""Typed request/response bodies for the Immich endpoints we talk to."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

MOBILE_APP_METADATA_KEY = "yaiiu-app"


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class UserInfo(_WireModel):
    id: str
    email: str = ""
    name: str = ""


class PartnerInfo(_WireModel):
    id: str
    email: str = ""
    name: str = ""


class RemoteAssetMetadataValue(_WireModel):
    cloud_id: Optional[str] = Field(default=None, alias="iCloudId")
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    latitude: Optional[str] = None
    longitude: Optional[str] = None


class RemoteAssetMetadata(_WireModel):
    key: str
    value: Optional[RemoteAssetMetadataValue] = None


class ServerAsset(_WireModel):
    id: str
    checksum: str
    original_file_name: Optional[str] = Field(default=None, alias="originalFileName")
    type: Optional[str] = None
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")
    metadata: Optional[list[RemoteAssetMetadata]] = None

    @property
    def cloud_id(self) -> Optional[str]:
        for item in self.metadata or []:
            if item.key == MOBILE_APP_METADATA_KEY and item.value is not None:
                return item.value.cloud_id
        return None


class FullSyncRequest(_WireModel):
    user_id: str = Field(alias="userId")
    limit: int
    last_id: Optional[str] = Field(default=None, alias="lastId")
    updated_until: datetime = Field(alias="updatedUntil")


class DeltaSyncRequest(_WireModel):
    updated_after: datetime = Field(alias="updatedAfter")
    user_ids: list[str] = Field(alias="userIds")


class DeltaSyncResponse(_WireModel):
    upserted: list[ServerAsset] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    needs_full_sync: bool = Field(default=False, alias="needsFullSync")


class UploadResponse(_WireModel):
    id: str
    duplicate: bool = False
    status: Optional[str] = None


class FavoriteUpdateRequest(_WireModel):
    ids: list[str]
    is_favorite: bool = Field(alias="isFavorite")


class MetadataUpdateItem(_WireModel):
    asset_id: str = Field(alias="assetId")
    key: str = MOBILE_APP_METADATA_KEY
    value: dict


class BulkMetadataRequest(_WireModel):
    items: list[MetadataUpdateItem]
