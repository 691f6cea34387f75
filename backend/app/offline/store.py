"""
Durable local store for the offline pipeline (SQLite file on the POS terminal).

Every call opens its own short-lived connection inside a worker thread, commits
before returning, and closes. There is no write-behind buffering: once an
awaited call returns, the record is on disk.
"""
from __future__ import annotations

import asyncio
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Iterable, Optional

from ..jsonlog import json_log
from .codec import (
    decode_cached_entity,
    decode_queued_request,
    decode_transaction,
    encode_cached_payload,
    encode_queued_request,
    encode_transaction_payload,
)
from .errors import DuplicateQueueEntry, StorageError, StorageUnavailable
from .models import QueuedRequest, UnsyncedTransaction, now_ms

SCHEMA = """
CREATE TABLE IF NOT EXISTS queue (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  id TEXT NOT NULL UNIQUE,
  url TEXT NOT NULL,
  method TEXT NOT NULL,
  headers_json TEXT NOT NULL,
  body TEXT NOT NULL,
  timestamp INTEGER NOT NULL,
  transaction_id TEXT,
  attempt_count INTEGER NOT NULL DEFAULT 0,
  last_error TEXT,
  next_attempt_at INTEGER
);
CREATE INDEX IF NOT EXISTS queue_timestamp_idx ON queue (timestamp);

CREATE TABLE IF NOT EXISTS transactions (
  id TEXT PRIMARY KEY,
  payload_json TEXT NOT NULL,
  status TEXT NOT NULL DEFAULT 'pending',
  attempt_count INTEGER NOT NULL DEFAULT 0,
  last_error TEXT,
  created_at INTEGER NOT NULL,
  synced_at INTEGER
);
CREATE INDEX IF NOT EXISTS transactions_status_idx ON transactions (status);

CREATE TABLE IF NOT EXISTS products (
  id TEXT PRIMARY KEY,
  payload_json TEXT NOT NULL,
  cached_at INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS customers (
  id TEXT PRIMARY KEY,
  payload_json TEXT NOT NULL,
  cached_at INTEGER NOT NULL
);
"""

_QUEUE_COLUMNS = (
    "id, url, method, headers_json, body, timestamp, transaction_id, "
    "attempt_count, last_error, next_attempt_at"
)
_TRANSACTION_COLUMNS = "id, payload_json, status, attempt_count, last_error, created_at, synced_at"

CACHE_TABLES = ("products", "customers")


class OfflineStore:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self._ready = False

    @property
    def is_ready(self) -> bool:
        return self._ready

    @contextmanager
    def _connect(self):
        # commit on success, rollback on exception, always close.
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA synchronous=FULL")
            with conn:
                yield conn
        finally:
            conn.close()

    def _init_sync(self):
        parent = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(parent, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)

    async def initialize(self) -> None:
        try:
            await asyncio.to_thread(self._init_sync)
        except (sqlite3.Error, OSError) as ex:
            self._ready = False
            json_log("error", "offline.store.unavailable", path=self.db_path, error=str(ex))
            raise StorageUnavailable(f"cannot open offline store at {self.db_path}: {ex}") from ex
        self._ready = True
        json_log("info", "offline.store.ready", path=self.db_path)

    async def dispose(self) -> None:
        self._ready = False

    async def _run(self, fn, *args):
        if not self._ready:
            raise StorageUnavailable("offline store is not initialized")
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as ex:
            json_log("error", "offline.store.error", op=getattr(fn, "__name__", "?"), error=str(ex))
            raise StorageError(str(ex)) from ex

    # Queue

    def _enqueue_sync(self, req: QueuedRequest) -> str:
        rec = encode_queued_request(req)
        try:
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO queue ({_QUEUE_COLUMNS})
                    VALUES (:id, :url, :method, :headers_json, :body, :timestamp, :transaction_id,
                            :attempt_count, :last_error, :next_attempt_at)
                    """,
                    rec,
                )
        except sqlite3.IntegrityError as ex:
            raise DuplicateQueueEntry(req.id) from ex
        return req.id

    async def enqueue(self, req: QueuedRequest) -> str:
        request_id = await self._run(self._enqueue_sync, req)
        json_log("info", "offline.store.enqueued", id=request_id, url=req.url, method=req.method)
        return request_id

    def _enqueue_transaction_sync(self, req: QueuedRequest, payload_json: str) -> str:
        rec = encode_queued_request(req)
        try:
            # Queue row and transaction row commit together or not at all.
            with self._connect() as conn:
                conn.execute(
                    f"""
                    INSERT INTO queue ({_QUEUE_COLUMNS})
                    VALUES (:id, :url, :method, :headers_json, :body, :timestamp, :transaction_id,
                            :attempt_count, :last_error, :next_attempt_at)
                    """,
                    rec,
                )
                conn.execute(
                    """
                    INSERT INTO transactions (id, payload_json, status, attempt_count, created_at)
                    VALUES (?, ?, 'pending', 0, ?)
                    ON CONFLICT (id) DO UPDATE SET
                      payload_json = excluded.payload_json,
                      status = 'pending',
                      synced_at = NULL
                    """,
                    (req.transaction_id, payload_json, now_ms()),
                )
        except sqlite3.IntegrityError as ex:
            raise DuplicateQueueEntry(req.id) from ex
        return req.id

    async def enqueue_transaction(self, req: QueuedRequest, payload: dict[str, Any]) -> str:
        if not str(req.transaction_id or "").strip():
            raise ValueError("transaction id is required")
        request_id = await self._run(self._enqueue_transaction_sync, req, encode_transaction_payload(payload))
        json_log("info", "offline.store.enqueued", id=request_id, url=req.url, transaction_id=req.transaction_id)
        return request_id

    def _purge_queued_sync(self, request_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute("SELECT transaction_id FROM queue WHERE id = ?", (request_id,)).fetchone()
            if row is None:
                return None
            conn.execute("DELETE FROM queue WHERE id = ?", (request_id,))
            if row["transaction_id"]:
                conn.execute("DELETE FROM transactions WHERE id = ?", (row["transaction_id"],))
            return row["transaction_id"] or ""

    async def purge_queued(self, request_id: str) -> bool:
        """
        Manual removal of a queued request. A linked transaction goes with it,
        so reconciliation never re-sends a purged sale.
        """
        transaction_id = await self._run(self._purge_queued_sync, request_id)
        if transaction_id is None:
            return False
        json_log("info", "offline.store.purged", id=request_id, transaction_id=transaction_id or None)
        return True

    def _dequeue_sync(self, request_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM queue WHERE id = ?", (request_id,))
            return cur.rowcount > 0

    async def dequeue(self, request_id: str) -> None:
        await self._run(self._dequeue_sync, request_id)

    def _list_queued_sync(self) -> list[QueuedRequest]:
        with self._connect() as conn:
            # seq is the insertion order; it keeps FIFO even when two timestamps collide.
            rows = conn.execute(f"SELECT {_QUEUE_COLUMNS} FROM queue ORDER BY seq ASC").fetchall()
        return [decode_queued_request(r) for r in rows]

    async def list_queued(self) -> list[QueuedRequest]:
        return await self._run(self._list_queued_sync)

    def _get_queued_sync(self, request_id: str) -> Optional[QueuedRequest]:
        with self._connect() as conn:
            row = conn.execute(f"SELECT {_QUEUE_COLUMNS} FROM queue WHERE id = ?", (request_id,)).fetchone()
        return decode_queued_request(row) if row else None

    async def get_queued(self, request_id: str) -> Optional[QueuedRequest]:
        return await self._run(self._get_queued_sync, request_id)

    def _record_failed_attempt_sync(self, request_id: str, error: str, next_attempt_at: Optional[int]):
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE queue
                SET attempt_count = attempt_count + 1,
                    last_error = ?,
                    next_attempt_at = ?
                WHERE id = ?
                """,
                ((error or "")[:1000], next_attempt_at, request_id),
            )

    async def record_failed_attempt(self, request_id: str, error: str, next_attempt_at: Optional[int] = None) -> None:
        await self._run(self._record_failed_attempt_sync, request_id, error, next_attempt_at)

    # Unsynced transactions

    def _record_transaction_sync(self, transaction_id: str, payload_json: str):
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO transactions (id, payload_json, status, attempt_count, created_at)
                VALUES (?, ?, 'pending', 0, ?)
                ON CONFLICT (id) DO UPDATE SET
                  payload_json = excluded.payload_json,
                  status = 'pending',
                  synced_at = NULL
                """,
                (transaction_id, payload_json, now_ms()),
            )

    async def record_unsynced_transaction(self, transaction_id: str, payload: dict[str, Any]) -> None:
        tid = str(transaction_id or "").strip()
        if not tid:
            raise ValueError("transaction id is required")
        await self._run(self._record_transaction_sync, tid, encode_transaction_payload(payload))

    def _set_transaction_status_sync(self, transaction_id: str, status: str, error: Optional[str]):
        with self._connect() as conn:
            if status == "synced":
                conn.execute(
                    "UPDATE transactions SET status = 'synced', last_error = NULL, synced_at = ? WHERE id = ?",
                    (now_ms(), transaction_id),
                )
            elif status == "failed":
                conn.execute(
                    """
                    UPDATE transactions
                    SET status = 'failed', attempt_count = attempt_count + 1, last_error = ?
                    WHERE id = ?
                    """,
                    ((error or "")[:1000], transaction_id),
                )
            else:
                conn.execute("UPDATE transactions SET status = ? WHERE id = ?", (status, transaction_id))

    async def mark_syncing(self, transaction_id: str) -> None:
        await self._run(self._set_transaction_status_sync, transaction_id, "syncing", None)

    async def mark_synced(self, transaction_id: str) -> None:
        await self._run(self._set_transaction_status_sync, transaction_id, "synced", None)

    async def mark_failed(self, transaction_id: str, error: str) -> None:
        await self._run(self._set_transaction_status_sync, transaction_id, "failed", error)

    def _list_transactions_sync(self, only_unsynced: bool) -> list[UnsyncedTransaction]:
        sql = f"SELECT {_TRANSACTION_COLUMNS} FROM transactions"
        if only_unsynced:
            sql += " WHERE status <> 'synced'"
        sql += " ORDER BY created_at ASC, rowid ASC"
        with self._connect() as conn:
            rows = conn.execute(sql).fetchall()
        return [decode_transaction(r) for r in rows]

    def _list_pending_sync(self) -> tuple[list[QueuedRequest], list[UnsyncedTransaction]]:
        with self._connect() as conn:
            # One read transaction so both lists come from the same committed state.
            conn.execute("BEGIN")
            queue = conn.execute(f"SELECT {_QUEUE_COLUMNS} FROM queue ORDER BY seq ASC").fetchall()
            txs = conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE status <> 'synced' "
                "ORDER BY created_at ASC, rowid ASC"
            ).fetchall()
        return [decode_queued_request(r) for r in queue], [decode_transaction(r) for r in txs]

    async def list_pending(self) -> tuple[list[QueuedRequest], list[UnsyncedTransaction]]:
        return await self._run(self._list_pending_sync)

    async def list_unsynced(self) -> list[UnsyncedTransaction]:
        return await self._run(self._list_transactions_sync, True)

    async def list_transactions(self) -> list[UnsyncedTransaction]:
        return await self._run(self._list_transactions_sync, False)

    def _get_transaction_sync(self, transaction_id: str) -> Optional[UnsyncedTransaction]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE id = ?", (transaction_id,)
            ).fetchone()
        return decode_transaction(row) if row else None

    async def get_transaction(self, transaction_id: str) -> Optional[UnsyncedTransaction]:
        return await self._run(self._get_transaction_sync, transaction_id)

    # Reference data cache

    def _cache_sync(self, table: str, entities: list[dict[str, Any]]) -> int:
        if table not in CACHE_TABLES:
            raise ValueError(f"unknown cache table: {table}")
        rows = [encode_cached_payload(e) for e in entities]
        cached_at = now_ms()
        with self._connect() as conn:
            conn.executemany(
                f"""
                INSERT INTO {table} (id, payload_json, cached_at)
                VALUES (?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                  payload_json = excluded.payload_json,
                  cached_at = excluded.cached_at
                """,
                [(entity_id, payload_json, cached_at) for entity_id, payload_json in rows],
            )
        return len(rows)

    def _get_cached_sync(self, table: str) -> list[dict[str, Any]]:
        if table not in CACHE_TABLES:
            raise ValueError(f"unknown cache table: {table}")
        with self._connect() as conn:
            rows = conn.execute(f"SELECT id, payload_json, cached_at FROM {table} ORDER BY id").fetchall()
        return [decode_cached_entity(r).payload for r in rows]

    async def cache_products(self, products: Iterable[dict[str, Any]]) -> int:
        count = await self._run(self._cache_sync, "products", list(products or []))
        json_log("info", "offline.cache.products", count=count)
        return count

    async def cache_customers(self, customers: Iterable[dict[str, Any]]) -> int:
        count = await self._run(self._cache_sync, "customers", list(customers or []))
        json_log("info", "offline.cache.customers", count=count)
        return count

    async def get_cached_products(self) -> list[dict[str, Any]]:
        return await self._run(self._get_cached_sync, "products")

    async def get_cached_customers(self) -> list[dict[str, Any]]:
        return await self._run(self._get_cached_sync, "customers")

    # Maintenance

    def _clear_all_sync(self):
        with self._connect() as conn:
            for table in ("transactions", "queue", *CACHE_TABLES):
                conn.execute(f"DELETE FROM {table}")

    async def clear_all(self) -> None:
        await self._run(self._clear_all_sync)
        json_log("info", "offline.store.cleared", path=self.db_path)

    def _stats_sync(self) -> dict[str, Any]:
        with self._connect() as conn:
            def _count(sql: str) -> int:
                row = conn.execute(sql).fetchone()
                return int(row[0] if row else 0)

            next_retry = conn.execute("SELECT MIN(next_attempt_at) FROM queue").fetchone()
            return {
                "queued": _count("SELECT COUNT(1) FROM queue"),
                "unsynced": _count("SELECT COUNT(1) FROM transactions WHERE status <> 'synced'"),
                "transactions": _count("SELECT COUNT(1) FROM transactions"),
                "products": _count("SELECT COUNT(1) FROM products"),
                "customers": _count("SELECT COUNT(1) FROM customers"),
                "next_retry_at": (int(next_retry[0]) if next_retry and next_retry[0] is not None else None),
            }

    async def get_stats(self) -> dict[str, Any]:
        # Always counted from the live tables; never cached.
        return await self._run(self._stats_sync)
