from __future__ import annotations

from dataclasses import asdict, replace
from typing import Any, Optional

import httpx

from ..jsonlog import json_log
from .connectivity import ConnectivityMonitor
from .errors import ClientRequestError, StorageError, StorageUnavailable
from .events import (
    DATA_CLEARED,
    OFFLINE,
    ONLINE,
    QUEUED,
    SYNC_COMPLETE,
    SYNC_START,
    TRANSACTION_QUEUED,
    TRANSACTION_SYNCED,
    EventBus,
)
from .models import SyncResult, SyncStatusSnapshot, now_ms, transaction_queue_id
from .policy import CLIENT_ERROR, SUCCESS, classify_status
from .store import OfflineStore
from .sync_manager import SyncManager


class OfflineStatus:
    """
    UI-facing view of the offline pipeline. Owns the SyncStatusSnapshot and
    recomputes it from live store counts whenever the pipeline reports a change.
    """

    def __init__(
        self,
        store: OfflineStore,
        bus: EventBus,
        monitor: ConnectivityMonitor,
        sync_manager: SyncManager,
        client: httpx.AsyncClient,
        *,
        transactions_path: str = "/api/transactions",
        timeout_seconds: float = 10.0,
    ):
        self._store = store
        self._bus = bus
        self._monitor = monitor
        self._sync_manager = sync_manager
        self._client = client
        self._transactions_path = transactions_path
        self._timeout = timeout_seconds
        self._snapshot = SyncStatusSnapshot(is_online=monitor.is_online)
        self._unsubscribers = [
            bus.subscribe(SYNC_START, self._on_sync_start),
            bus.subscribe(SYNC_COMPLETE, self._on_sync_complete),
            bus.subscribe(QUEUED, self._on_counts_changed),
            bus.subscribe(TRANSACTION_QUEUED, self._on_counts_changed),
            bus.subscribe(TRANSACTION_SYNCED, self._on_counts_changed),
            bus.subscribe(DATA_CLEARED, self._on_counts_changed),
            bus.subscribe(ONLINE, self._on_connectivity),
            bus.subscribe(OFFLINE, self._on_connectivity),
        ]

    async def initialize(self) -> bool:
        try:
            await self._store.initialize()
        except StorageUnavailable as ex:
            json_log("warning", "offline.mode.disabled", error=str(ex))
            self._snapshot = replace(self._snapshot, is_supported=False, is_online=self._monitor.is_online)
            return False
        self._snapshot = replace(self._snapshot, is_supported=True, is_online=self._monitor.is_online)
        await self.refresh()
        return True

    def dispose(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def snapshot(self) -> SyncStatusSnapshot:
        return self._snapshot

    def as_dict(self) -> dict[str, Any]:
        return asdict(self._snapshot)

    async def refresh(self) -> SyncStatusSnapshot:
        if not self._snapshot.is_supported:
            return self._snapshot
        try:
            stats = await self._store.get_stats()
        except (StorageError, StorageUnavailable) as ex:
            json_log("error", "offline.status.refresh_failed", error=str(ex))
            return self._snapshot
        self._snapshot = replace(
            self._snapshot,
            queue_size=stats["queued"],
            unsynced_count=stats["unsynced"],
            next_retry=stats.get("next_retry_at"),
        )
        return self._snapshot

    # Event handlers

    def _on_sync_start(self, _event) -> None:
        self._snapshot = replace(self._snapshot, is_syncing=True)

    async def _on_sync_complete(self, _result: SyncResult) -> None:
        self._snapshot = replace(self._snapshot, is_syncing=False, last_sync=now_ms())
        await self.refresh()

    async def _on_counts_changed(self, _event) -> None:
        await self.refresh()

    async def _on_connectivity(self, event) -> None:
        self._snapshot = replace(self._snapshot, is_online=bool(event.online))

    # Operations

    async def force_sync(self) -> SyncResult:
        snap = self._snapshot
        if not snap.is_online or snap.is_syncing:
            return SyncResult.skipped_result()
        return await self._sync_manager.force_sync()

    async def queue_transaction(self, transaction: dict[str, Any]) -> dict[str, Any]:
        tx_id = str((transaction or {}).get("id") or "").strip()
        if tx_id and self._snapshot.is_supported:
            queue_id = transaction_queue_id(tx_id)
            # A retried submit of a sale still waiting for replay must not be sent again directly.
            if await self._store.get_queued(queue_id) is not None:
                json_log("info", "offline.transaction.already_queued", id=tx_id)
                return {"success": True, "queued": True, "queue_id": queue_id}

        if self._snapshot.is_online:
            try:
                response = await self._client.post(
                    self._transactions_path,
                    json=transaction,
                    timeout=self._timeout,
                )
            except httpx.TransportError as ex:
                json_log("warning", "offline.transaction.direct_failed", id=transaction.get("id"), error=str(ex))
            else:
                outcome = classify_status(response.status_code)
                if outcome == SUCCESS:
                    return {"success": True, "queued": False}
                if outcome == CLIENT_ERROR:
                    raise ClientRequestError(response)
                json_log(
                    "warning",
                    "offline.transaction.direct_failed",
                    id=transaction.get("id"),
                    status_code=response.status_code,
                )

        queue_id = await self._sync_manager.queue_transaction(transaction)
        return {"success": True, "queued": True, "queue_id": queue_id}

    async def get_cached_data(self) -> dict[str, list[dict[str, Any]]]:
        products = await self._store.get_cached_products()
        customers = await self._store.get_cached_customers()
        return {"products": products, "customers": customers}

    async def cache_data(
        self,
        *,
        products: Optional[list[dict[str, Any]]] = None,
        customers: Optional[list[dict[str, Any]]] = None,
    ) -> dict[str, int]:
        counts = {}
        if products is not None:
            counts["products"] = await self._store.cache_products(products)
        if customers is not None:
            counts["customers"] = await self._store.cache_customers(customers)
        return counts

    async def purge_request(self, request_id: str) -> bool:
        purged = await self._store.purge_queued(request_id)
        await self.refresh()
        return purged

    async def clear_offline_data(self) -> SyncStatusSnapshot:
        await self._sync_manager.clear_offline_data()
        return await self.refresh()
