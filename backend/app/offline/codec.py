"""
Serialization boundary between the offline records and their SQLite rows.

The store never builds or parses JSON itself; every record goes through the
encode/decode pairs below.
"""
from __future__ import annotations

import json
from typing import Any, Mapping

from .models import CachedEntity, QueuedRequest, UnsyncedTransaction


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, separators=(",", ":"))


def _loads_dict(raw: Any) -> dict:
    if raw is None or raw == "":
        return {}
    value = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
    if not isinstance(value, dict):
        raise ValueError("expected a JSON object")
    return value


def encode_queued_request(req: QueuedRequest) -> dict[str, Any]:
    return {
        "id": req.id,
        "url": req.url,
        "method": req.method,
        # Header order is preserved so replay is verbatim.
        "headers_json": _dumps({str(k): str(v) for k, v in req.headers.items()}),
        "body": req.body,
        "timestamp": int(req.timestamp),
        "transaction_id": req.transaction_id,
        "attempt_count": int(req.attempt_count),
        "last_error": req.last_error,
        "next_attempt_at": req.next_attempt_at,
    }


def decode_queued_request(row: Mapping[str, Any]) -> QueuedRequest:
    return QueuedRequest(
        id=str(row["id"]),
        url=str(row["url"]),
        method=str(row["method"]),
        headers={str(k): str(v) for k, v in _loads_dict(row["headers_json"]).items()},
        body=row["body"] if row["body"] is not None else "",
        timestamp=int(row["timestamp"]),
        transaction_id=row["transaction_id"],
        attempt_count=int(row["attempt_count"] or 0),
        last_error=row["last_error"],
        next_attempt_at=(int(row["next_attempt_at"]) if row["next_attempt_at"] is not None else None),
    )


def encode_transaction_payload(payload: Mapping[str, Any]) -> str:
    return _dumps(dict(payload))


def decode_transaction(row: Mapping[str, Any]) -> UnsyncedTransaction:
    return UnsyncedTransaction(
        id=str(row["id"]),
        payload=_loads_dict(row["payload_json"]),
        status=row["status"],
        attempt_count=int(row["attempt_count"] or 0),
        last_error=row["last_error"],
        created_at=int(row["created_at"] or 0),
        synced_at=(int(row["synced_at"]) if row["synced_at"] is not None else None),
    )


def encode_cached_payload(payload: Mapping[str, Any]) -> tuple[str, str]:
    entity_id = str(payload.get("id") or "").strip()
    if not entity_id:
        raise ValueError("cached entity requires an id")
    return entity_id, _dumps(dict(payload))


def decode_cached_entity(row: Mapping[str, Any]) -> CachedEntity:
    return CachedEntity(
        id=str(row["id"]),
        payload=_loads_dict(row["payload_json"]),
        cached_at=int(row["cached_at"]),
    )
