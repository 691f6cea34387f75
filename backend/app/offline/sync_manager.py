"""
Drains the offline queue and reconciles unsynced transactions.

Cycle rules:
- at most one cycle in flight; overlapping triggers are dropped, not queued;
- the queue is snapshotted at cycle start and replayed oldest-first, so the
  upstream sees mutations in the order the sales were rung up;
- a failing item stays queued (attempt count + backoff) and the cycle moves on;
- `sync-complete` is emitted exactly once per cycle, even on storage failure.
"""
from __future__ import annotations

import asyncio
import json
from typing import Any, Optional

import httpx

from ..jsonlog import json_log
from .connectivity import ConnectivityMonitor
from .errors import DuplicateQueueEntry, StorageError, StorageUnavailable, SyncItemFailure
from .events import (
    DATA_CLEARED,
    ONLINE,
    REQUEST_SYNCED,
    SYNC_COMPLETE,
    SYNC_START,
    TRANSACTION_QUEUED,
    TRANSACTION_SYNCED,
    DataCleared,
    EventBus,
    RequestSynced,
    SyncStarted,
    TransactionQueued,
    TransactionSynced,
)
from .models import QueuedRequest, SyncResult, UnsyncedTransaction, now_ms, transaction_queue_id
from .policy import SUCCESS, classify_status, next_attempt_at
from .store import OfflineStore

TRIGGER_MANUAL = "manual"
TRIGGER_FORCE = "force"
TRIGGER_RECONNECT = "reconnect"
TRIGGER_TIMER = "timer"


class _StoreFailed(Exception):
    pass


class SyncManager:
    def __init__(
        self,
        store: OfflineStore,
        bus: EventBus,
        client: httpx.AsyncClient,
        monitor: ConnectivityMonitor,
        *,
        interval_seconds: float = 30.0,
        timeout_seconds: float = 10.0,
        transactions_path: str = "/api/transactions",
        reconcile_path: str = "/api/transactions/sync",
    ):
        self._store = store
        self._bus = bus
        self._client = client
        self._monitor = monitor
        self._interval = interval_seconds
        self._timeout = timeout_seconds
        self._transactions_path = transactions_path
        self._reconcile_path = reconcile_path
        self._syncing = False
        self._last_sync: Optional[int] = None
        self._timer_task: Optional[asyncio.Task] = None
        self._spawned: set[asyncio.Task] = set()
        self._unsubscribe = None

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def state(self) -> str:
        return "syncing" if self._syncing else "idle"

    @property
    def last_sync(self) -> Optional[int]:
        return self._last_sync

    # Lifecycle

    async def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._bus.subscribe(ONLINE, self._on_online)
        if self._timer_task is None:
            self._timer_task = asyncio.create_task(self._auto_sync_loop())

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        task, self._timer_task = self._timer_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        # Cycles are not cancelled mid-flight; let any running one finish.
        if self._spawned:
            await asyncio.gather(*list(self._spawned), return_exceptions=True)

    def _on_online(self, _event) -> None:
        task = asyncio.get_running_loop().create_task(self.sync(trigger=TRIGGER_RECONNECT))
        self._spawned.add(task)
        task.add_done_callback(self._spawned.discard)

    async def _auto_sync_loop(self):
        while True:
            await asyncio.sleep(self._interval)
            if not self._monitor.is_online or self._syncing:
                continue
            try:
                await self.sync(trigger=TRIGGER_TIMER)
            except Exception as ex:
                # Never let one bad cycle kill the timer.
                json_log("error", "offline.sync.timer_error", error=str(ex))

    # Sync cycle

    async def force_sync(self) -> SyncResult:
        json_log("info", "offline.sync.forced")
        return await self.sync(trigger=TRIGGER_FORCE)

    async def sync(self, trigger: str = TRIGGER_MANUAL) -> SyncResult:
        if self._syncing:
            json_log("info", "offline.sync.skipped", reason="in_progress", trigger=trigger)
            return SyncResult.skipped_result()
        if not self._monitor.is_online:
            json_log("info", "offline.sync.skipped", reason="offline", trigger=trigger)
            return SyncResult.skipped_result()

        # Set before the first await so a concurrent trigger sees the guard.
        self._syncing = True
        result = SyncResult()
        started = now_ms()
        try:
            await self._bus.emit(SYNC_START, SyncStarted(timestamp=started))
            json_log("info", "offline.sync.start", trigger=trigger)
            await self._run_cycle(result, honor_backoff=(trigger == TRIGGER_TIMER))
        finally:
            result.success = result.failed == 0 and not result.errors
            self._syncing = False
            self._last_sync = now_ms()
            json_log(
                "info",
                "offline.sync.complete",
                trigger=trigger,
                synced=result.synced,
                failed=result.failed,
                duration_ms=self._last_sync - started,
            )
            await self._bus.emit(SYNC_COMPLETE, result)
        return result

    async def _run_cycle(self, result: SyncResult, *, honor_backoff: bool) -> None:
        try:
            queue, unsynced = await self._store.list_pending()
        except (StorageError, StorageUnavailable) as ex:
            json_log("error", "offline.sync.store_unreadable", error=str(ex))
            result.add_error(None, f"offline store unreadable: {ex}")
            return

        now = now_ms()
        # Items still inside their backoff window are not attempted on timer cycles.
        due = [
            item
            for item in queue
            if not (honor_backoff and item.next_attempt_at and item.next_attempt_at > now)
        ]
        for index, item in enumerate(due):
            try:
                await self._replay(item, result)
            except _StoreFailed as ex:
                self._fail_remaining([rest.id for rest in due[index:]], result, ex)
                return

        linked = {item.transaction_id for item in queue if item.transaction_id}
        orphans = [tx for tx in unsynced if tx.id not in linked]
        for index, tx in enumerate(orphans):
            try:
                await self._reconcile(tx, result)
            except _StoreFailed as ex:
                self._fail_remaining([rest.id for rest in orphans[index:]], result, ex)
                return

    @staticmethod
    def _fail_remaining(item_ids: list[str], result: SyncResult, ex: Exception) -> None:
        for item_id in item_ids:
            result.failed += 1
            result.add_error(item_id, f"offline store failed: {ex}")

    async def _replay(self, item: QueuedRequest, result: SyncResult) -> None:
        failure = None
        try:
            response = await self._client.request(
                item.method,
                item.url,
                headers=item.headers,
                content=item.body.encode("utf-8") if item.body else None,
                timeout=self._timeout,
            )
        except httpx.TransportError as ex:
            failure = SyncItemFailure(item.id, f"network error: {ex}")
        else:
            if classify_status(response.status_code, replay=True) != SUCCESS:
                failure = SyncItemFailure(item.id, f"HTTP {response.status_code}")

        try:
            if failure is None:
                await self._store.dequeue(item.id)
                if item.transaction_id:
                    await self._store.mark_synced(item.transaction_id)
            else:
                attempts = item.attempt_count + 1
                await self._store.record_failed_attempt(item.id, failure.reason, next_attempt_at(attempts, item.id))
                if item.transaction_id:
                    await self._store.mark_failed(item.transaction_id, failure.reason)
        except (StorageError, StorageUnavailable) as ex:
            raise _StoreFailed(str(ex)) from ex

        if failure is None:
            result.synced += 1
            json_log("info", "offline.sync.item_synced", id=item.id, transaction_id=item.transaction_id)
            await self._bus.emit(REQUEST_SYNCED, RequestSynced(id=item.id))
            await self._bus.emit(TRANSACTION_SYNCED, TransactionSynced(id=item.id, transaction_id=item.transaction_id))
        else:
            result.failed += 1
            result.add_error(item.id, failure.reason)
            json_log(
                "warning",
                "offline.sync.item_failed",
                id=item.id,
                attempt_count=item.attempt_count + 1,
                error=failure.reason,
            )

    async def _reconcile(self, tx: UnsyncedTransaction, result: SyncResult) -> None:
        try:
            await self._store.mark_syncing(tx.id)
        except (StorageError, StorageUnavailable) as ex:
            raise _StoreFailed(str(ex)) from ex

        error = None
        try:
            response = await self._client.post(
                self._reconcile_path,
                content=json.dumps(tx.payload, default=str).encode("utf-8"),
                headers={"Content-Type": "application/json"},
                timeout=self._timeout,
            )
            if classify_status(response.status_code, replay=True) != SUCCESS:
                error = f"HTTP {response.status_code}"
        except httpx.TransportError as ex:
            error = f"network error: {ex}"

        try:
            if error is None:
                await self._store.mark_synced(tx.id)
            else:
                await self._store.mark_failed(tx.id, error)
        except (StorageError, StorageUnavailable) as ex:
            raise _StoreFailed(str(ex)) from ex

        if error is None:
            result.synced += 1
            await self._bus.emit(TRANSACTION_SYNCED, TransactionSynced(id=tx.id, transaction_id=tx.id))
        else:
            result.failed += 1
            result.add_error(tx.id, error)
            json_log("warning", "offline.sync.transaction_failed", id=tx.id, error=error)

    # Queue helpers used by the status facade

    async def queue_transaction(self, transaction: dict[str, Any]) -> str:
        tx_id = str((transaction or {}).get("id") or "").strip()
        if not tx_id:
            raise ValueError("transaction id is required")
        request = QueuedRequest(
            id=transaction_queue_id(tx_id),
            url=self._transactions_path,
            method="POST",
            headers={"Content-Type": "application/json"},
            body=json.dumps(transaction, default=str),
            timestamp=now_ms(),
            transaction_id=tx_id,
        )
        try:
            # One write for both rows: a cycle can never see the queue item without its transaction.
            await self._store.enqueue_transaction(request, transaction)
        except DuplicateQueueEntry:
            # Already waiting for replay; a retried submit must not queue a second copy.
            json_log("info", "offline.transaction.already_queued", id=tx_id)
            return request.id
        stats = await self._store.get_stats()
        json_log("info", "offline.transaction.queued", id=tx_id, queue_size=stats["queued"])
        await self._bus.emit(TRANSACTION_QUEUED, TransactionQueued(id=tx_id, queue_size=stats["queued"]))
        return request.id

    async def get_status(self) -> dict[str, Any]:
        stats = await self._store.get_stats()
        return {
            "online": self._monitor.is_online,
            "syncing": self._syncing,
            "state": self.state,
            "has_pending": stats["queued"] > 0,
            "queue_size": stats["queued"],
            "last_sync": self._last_sync,
            "stats": stats,
        }

    async def clear_offline_data(self) -> None:
        await self._store.clear_all()
        await self._bus.emit(DATA_CLEARED, DataCleared(timestamp=now_ms()))
