from __future__ import annotations

from typing import Optional

import httpx


class OfflineError(Exception):
    pass


class StorageUnavailable(OfflineError):
    """
    The durable store cannot be opened (or was never initialized).
    Offline mode switches itself off; online-only operation continues.
    """


class StorageError(OfflineError):
    """The store was open but a read/write against it failed."""


class DuplicateQueueEntry(OfflineError):
    def __init__(self, request_id: str):
        super().__init__(f"queued request already exists: {request_id}")
        self.request_id = request_id


class ConnectivityFailure(OfflineError):
    """Network error, timeout or 5xx/408/429 from the upstream API."""


class ClientRequestError(OfflineError):
    """
    The upstream rejected the request with a 4xx that a retry cannot fix.
    Carries the untouched upstream response.
    """

    def __init__(self, response: httpx.Response):
        super().__init__(f"upstream rejected request: HTTP {response.status_code}")
        self.response = response

    @property
    def status_code(self) -> int:
        return self.response.status_code


class SyncItemFailure(OfflineError):
    def __init__(self, item_id: Optional[str], reason: str):
        super().__init__(reason)
        self.item_id = item_id
        self.reason = reason
