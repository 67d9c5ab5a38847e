from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional

import requests

from assetsync.core.errors import RemoteApiError
from assetsync.media.library import AssetResource

from .models import (
    MOBILE_APP_METADATA_KEY,
    BulkMetadataRequest,
    DeltaSyncRequest,
    DeltaSyncResponse,
    FavoriteUpdateRequest,
    FullSyncRequest,
    MetadataUpdateItem,
    PartnerInfo,
    ServerAsset,
    UploadResponse,
    UserInfo,
)

logger = logging.getLogger("api")

DEVICE_ID = "assetsync"


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


class ImmichClient:
    def __init__(self, server_url: str, api_key: str, timeout: int = 60):
        self.server_url = (server_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg) -> "ImmichClient":
        return cls(cfg.server.url, cfg.server.api_key, timeout=cfg.server.timeout_sec)

    def _url(self, path: str) -> str:
        if not self.server_url:
            raise RuntimeError("server_url_missing")
        return f"{self.server_url}/api{path}"

    def _headers(self, content_type: str | None = "application/json") -> dict[str, str]:
        if not self.api_key:
            raise RuntimeError("api_key_missing")
        headers = {"x-api-key": self.api_key, "Accept": "application/json"}
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def _check(self, res: requests.Response, op: str, ok: tuple[int, ...] = (200,)) -> Any:
        if res.status_code not in ok:
            text = (res.text or "").strip()
            logger.error("%s_failed status=%s body=%s", op, res.status_code, text[:200])
            raise RemoteApiError(res.status_code, f"{op}: {text[:200]}")
        if res.status_code == 204 or not (res.content or b"").strip():
            return None
        try:
            return res.json()
        except ValueError as e:
            raise RemoteApiError(res.status_code, f"{op}_invalid_json") from e

    def get_current_user(self) -> UserInfo:
        res = requests.get(self._url("/users/me"), headers=self._headers(), timeout=self.timeout)
        return UserInfo.model_validate(self._check(res, "get_current_user"))

    def fetch_partners(self) -> list[PartnerInfo]:
        res = requests.get(
            self._url("/partners"),
            params={"direction": "shared-with"},
            headers=self._headers(),
            timeout=self.timeout,
        )
        payload = self._check(res, "fetch_partners") or []
        if not isinstance(payload, list):
            raise RemoteApiError(res.status_code, "fetch_partners: invalid_response")
        return [PartnerInfo.model_validate(item) for item in payload]

    def fetch_partner_user_ids(self) -> list[str]:
        return [p.id for p in self.fetch_partners()]

    def fetch_full_sync_page(
        self,
        user_id: str,
        limit: int,
        last_id: Optional[str],
        updated_until: datetime,
    ) -> list[ServerAsset]:
        body = FullSyncRequest(user_id=user_id, limit=limit, last_id=last_id, updated_until=updated_until)
        payload = body.model_dump(mode="json", by_alias=True, exclude_none=True)
        res = requests.post(self._url("/sync/full-sync"), json=payload, headers=self._headers(), timeout=self.timeout)
        data = self._check(res, "full_sync") or []
        if not isinstance(data, list):
            raise RemoteApiError(res.status_code, "full_sync: invalid_response")
        return [ServerAsset.model_validate(item) for item in data]

    def fetch_delta_sync(self, updated_after: datetime, user_ids: list[str]) -> DeltaSyncResponse:
        body = DeltaSyncRequest(updated_after=updated_after, user_ids=user_ids)
        payload = body.model_dump(mode="json", by_alias=True)
        res = requests.post(self._url("/sync/delta-sync"), json=payload, headers=self._headers(), timeout=self.timeout)
        return DeltaSyncResponse.model_validate(self._check(res, "delta_sync") or {})

    def upload_resource(
        self,
        resource: AssetResource,
        device_asset_id: str,
        created_at: datetime,
        modified_at: datetime,
        is_favorite: bool = False,
        cloud_id: Optional[str] = None,
    ) -> UploadResponse:
        data = {
            "deviceAssetId": device_asset_id,
            "deviceId": DEVICE_ID,
            "fileCreatedAt": _iso(created_at),
            "fileModifiedAt": _iso(modified_at),
            "isFavorite": "true" if is_favorite else "false",
        }
        if cloud_id:
            data["metadata"] = json.dumps(
                [{"key": MOBILE_APP_METADATA_KEY, "value": {"iCloudId": cloud_id, "createdAt": _iso(created_at)}}]
            )
        name = resource.original_filename.replace('"', "_")
        logger.info("upload_start filename=%s size=%s", name, resource.size)
        with resource.open() as fp:
            files = {"assetData": (name, fp, resource.mime_type)}
            res = requests.post(
                self._url("/assets"),
                headers=self._headers(content_type=None),
                data=data,
                files=files,
                timeout=self.timeout,
            )
        out = UploadResponse.model_validate(self._check(res, "upload", ok=(200, 201)))
        if out.status == "duplicate":
            out.duplicate = True
        logger.info("upload_done filename=%s remote_id=%s duplicate=%s", name, out.id, out.duplicate)
        return out

    def update_assets_favorite(self, asset_ids: list[str], is_favorite: bool) -> None:
        if not asset_ids:
            return
        body = FavoriteUpdateRequest(ids=asset_ids, is_favorite=is_favorite)
        res = requests.put(
            self._url("/assets"),
            json=body.model_dump(by_alias=True),
            headers=self._headers(),
            timeout=self.timeout,
        )
        self._check(res, "update_assets_favorite", ok=(200, 204))
        logger.info("favorite_updated count=%s is_favorite=%s", len(asset_ids), is_favorite)

    def update_bulk_asset_metadata(self, cloud_ids_by_remote_id: dict[str, str]) -> None:
        if not cloud_ids_by_remote_id:
            return
        body = BulkMetadataRequest(
            items=[
                MetadataUpdateItem(asset_id=remote_id, value={"iCloudId": cloud_id})
                for remote_id, cloud_id in cloud_ids_by_remote_id.items()
            ]
        )
        res = requests.put(
            self._url("/assets/metadata"),
            json=body.model_dump(by_alias=True),
            headers=self._headers(),
            timeout=self.timeout,
        )
        self._check(res, "update_bulk_asset_metadata", ok=(200, 204))
