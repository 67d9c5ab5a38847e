import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from assetsync.core.errors import RemoteApiError
from assetsync.core.models import ResourceType
from assetsync.media.library import AssetResource
from assetsync.remote import client as client_module
from assetsync.remote.client import ImmichClient


class _FakeResponse:
    def __init__(self, status_code: int, payload=None):
        self.status_code = status_code
        self._payload = payload
        self.content = b"" if payload is None else json.dumps(payload).encode()
        self.text = self.content.decode()

    def json(self):
        return self._payload


class _Recorder:
    def __init__(self, response: _FakeResponse):
        self.response = response
        self.calls: list[tuple[str, dict]] = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.response


def test_full_sync_page_sends_camel_case_body(monkeypatch):
    recorder = _Recorder(_FakeResponse(200, [{"id": "r1", "checksum": "AAAA", "originalFileName": "a.jpg"}]))
    monkeypatch.setattr(client_module.requests, "post", recorder)
    client = ImmichClient("https://photos.example.com/", "secret")

    page = client.fetch_full_sync_page("user-1", 2, None, datetime(2026, 1, 1, tzinfo=timezone.utc))

    url, kwargs = recorder.calls[0]
    assert url == "https://photos.example.com/api/sync/full-sync"
    assert kwargs["headers"]["x-api-key"] == "secret"
    assert kwargs["json"]["userId"] == "user-1"
    assert kwargs["json"]["limit"] == 2
    assert "lastId" not in kwargs["json"]
    assert kwargs["json"]["updatedUntil"].startswith("2026-01-01T00:00:00")
    assert page[0].original_file_name == "a.jpg"


def test_delta_sync_parses_needs_full_sync(monkeypatch):
    recorder = _Recorder(_FakeResponse(200, {"upserted": [], "deleted": ["r1"], "needsFullSync": True}))
    monkeypatch.setattr(client_module.requests, "post", recorder)

    resp = ImmichClient("https://photos.example.com", "k").fetch_delta_sync(
        datetime(2026, 1, 1, tzinfo=timezone.utc), ["user-1"]
    )

    assert resp.needs_full_sync is True
    assert resp.deleted == ["r1"]
    assert recorder.calls[0][1]["json"]["userIds"] == ["user-1"]


def test_non_ok_status_raises_remote_api_error(monkeypatch):
    monkeypatch.setattr(client_module.requests, "get", _Recorder(_FakeResponse(401, {"message": "bad key"})))

    with pytest.raises(RemoteApiError) as exc:
        ImmichClient("https://photos.example.com", "k").get_current_user()
    assert exc.value.status_code == 401


def test_missing_api_key_is_rejected_before_any_request():
    with pytest.raises(RuntimeError, match="api_key_missing"):
        ImmichClient("https://photos.example.com", "").get_current_user()


def test_upload_sends_multipart_with_device_fields(monkeypatch, tmp_path: Path):
    path = tmp_path / "a.jpg"
    path.write_bytes(b"jpeg-bytes")
    resource = AssetResource(resource_type=ResourceType.PRIMARY, original_filename="a.jpg", path=path, uti="jpg")
    recorder = _Recorder(_FakeResponse(200, {"id": "remote-1", "status": "duplicate"}))
    monkeypatch.setattr(client_module.requests, "post", recorder)
    when = datetime(2026, 1, 1, tzinfo=timezone.utc)

    out = ImmichClient("https://photos.example.com", "k").upload_resource(
        resource, "A-primary-a.jpg", when, when, is_favorite=True, cloud_id="g:1:h"
    )

    url, kwargs = recorder.calls[0]
    assert url == "https://photos.example.com/api/assets"
    assert "Content-Type" not in kwargs["headers"]
    assert kwargs["data"]["deviceAssetId"] == "A-primary-a.jpg"
    assert kwargs["data"]["isFavorite"] == "true"
    assert json.loads(kwargs["data"]["metadata"])[0]["value"]["iCloudId"] == "g:1:h"
    assert kwargs["files"]["assetData"][0] == "a.jpg"
    assert out.id == "remote-1"
    assert out.duplicate is True
