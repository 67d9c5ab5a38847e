"""Error taxonomy for the sync engine.

Messages follow the ``"snake_case_code: detail"`` convention so they read
well in the log file and in run summaries.
"""

from __future__ import annotations


class AssetSyncError(RuntimeError):
    code = "asset_sync_error"

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(f"{self.code}: {detail}" if detail else self.code)


class NoResourceFound(AssetSyncError):
    code = "no_resource_found"


class HashCalculationFailed(AssetSyncError):
    code = "hash_calculation_failed"

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class StoreWriteFailed(AssetSyncError):
    code = "store_write_failed"


class RemoteSyncFailed(AssetSyncError):
    code = "remote_sync_failed"


class RemoteApiError(AssetSyncError):
    code = "remote_api_error"

    def __init__(self, status_code: int | None, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"status={status_code} {message}".strip())


class NeedsFullSyncFallback(Exception):
    """Raised by a delta sync when the server says the cursor is no longer usable.

    Not an error: the remote sync client catches it and runs a full sync.
    """
