from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Optional


TransactionStatus = Literal["pending", "syncing", "synced", "failed"]


def now_ms() -> int:
    return int(time.time() * 1000)


def new_request_id() -> str:
    return f"{now_ms()}-{uuid.uuid4().hex}"


def transaction_queue_id(transaction_id: str) -> str:
    return f"txn-{transaction_id}"


@dataclass(frozen=True)
class OutboundRequest:
    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""


@dataclass(frozen=True)
class QueuedRequest:
    """
    One deferred outbound call. `url`, `method`, `headers` and `body` are replayed
    verbatim; the remaining fields are retry bookkeeping owned by the store.
    """

    id: str
    url: str
    method: str
    headers: dict[str, str]
    body: str
    timestamp: int
    transaction_id: Optional[str] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
    next_attempt_at: Optional[int] = None

    @classmethod
    def from_outbound(
        cls,
        request: OutboundRequest,
        *,
        request_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> "QueuedRequest":
        return cls(
            id=request_id or new_request_id(),
            url=request.url,
            method=request.method.upper(),
            headers=dict(request.headers),
            body=request.body,
            timestamp=now_ms(),
            transaction_id=transaction_id,
        )


@dataclass(frozen=True)
class UnsyncedTransaction:
    id: str
    payload: dict[str, Any]
    status: TransactionStatus = "pending"
    attempt_count: int = 0
    last_error: Optional[str] = None
    created_at: int = 0
    synced_at: Optional[int] = None

    @property
    def synced(self) -> bool:
        return self.status == "synced"


@dataclass(frozen=True)
class CachedEntity:
    id: str
    payload: dict[str, Any]
    cached_at: int


@dataclass
class SyncResult:
    success: bool = True
    synced: int = 0
    failed: int = 0
    errors: list[dict[str, Optional[str]]] = field(default_factory=list)
    skipped: bool = False

    @classmethod
    def skipped_result(cls) -> "SyncResult":
        return cls(success=False, skipped=True)

    def add_error(self, item_id: Optional[str], error: str) -> None:
        self.errors.append({"id": item_id, "error": error})


@dataclass(frozen=True)
class SyncStatusSnapshot:
    is_online: bool = True
    is_supported: bool = False
    is_syncing: bool = False
    queue_size: int = 0
    unsynced_count: int = 0
    last_sync: Optional[int] = None
    next_retry: Optional[int] = None
