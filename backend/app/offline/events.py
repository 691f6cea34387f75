from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from ..jsonlog import json_log

SYNC_START = "sync-start"
SYNC_COMPLETE = "sync-complete"
QUEUED = "queued"
REQUEST_SYNCED = "request-synced"
TRANSACTION_SYNCED = "transaction-synced"
TRANSACTION_QUEUED = "transaction-queued"
DATA_CLEARED = "data-cleared"
ONLINE = "online"
OFFLINE = "offline"

EVENT_NAMES = frozenset(
    {
        SYNC_START,
        SYNC_COMPLETE,
        QUEUED,
        REQUEST_SYNCED,
        TRANSACTION_SYNCED,
        TRANSACTION_QUEUED,
        DATA_CLEARED,
        ONLINE,
        OFFLINE,
    }
)


@dataclass(frozen=True)
class SyncStarted:
    timestamp: int


@dataclass(frozen=True)
class RequestQueued:
    id: str
    url: str
    queue_size: int


@dataclass(frozen=True)
class RequestSynced:
    id: str


@dataclass(frozen=True)
class TransactionSynced:
    id: str
    transaction_id: Optional[str] = None


@dataclass(frozen=True)
class TransactionQueued:
    id: str
    queue_size: int


@dataclass(frozen=True)
class ConnectivityChanged:
    online: bool
    timestamp: int


@dataclass(frozen=True)
class DataCleared:
    timestamp: int


Listener = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    """
    Named-event pub/sub for the offline pipeline. Any number of listeners may
    subscribe to a name; `subscribe` returns the matching unsubscribe callable.
    Listeners may be plain callables or coroutine functions.
    """

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, name: str, listener: Listener) -> Callable[[], None]:
        if name not in EVENT_NAMES:
            raise ValueError(f"unknown event: {name}")
        self._listeners.setdefault(name, []).append(listener)

        def _unsubscribe() -> None:
            listeners = self._listeners.get(name) or []
            if listener in listeners:
                listeners.remove(listener)

        return _unsubscribe

    def listener_count(self, name: str) -> int:
        return len(self._listeners.get(name) or [])

    async def emit(self, name: str, payload: Any) -> None:
        for listener in list(self._listeners.get(name) or []):
            try:
                res = listener(payload)
                if inspect.isawaitable(res):
                    await res
            except Exception as ex:
                # A broken listener must not break the operation that emitted.
                json_log("error", "offline.event.listener_failed", event_name=name, error=str(ex))
