"""
Single place that decides how an upstream outcome is treated.

Both the interceptor (live delivery) and the sync manager (replay) classify
responses through `classify_status`, so "queue vs. surface" and "retry vs.
done" never drift apart between call sites.
"""
from __future__ import annotations

import hashlib
from typing import Iterable, Optional
from urllib.parse import urlsplit

from .models import now_ms

SUCCESS = "success"
TRANSIENT = "transient"
CLIENT_ERROR = "client_error"

# 4xx codes that mean "try again later" rather than "this request is wrong".
RETRYABLE_CLIENT_STATUSES = frozenset({408, 429})

MAX_RETRY_DELAY_SECONDS = 300


def classify_status(status_code: int, *, replay: bool = False) -> str:
    code = int(status_code)
    if 200 <= code < 300:
        return SUCCESS
    # On replay a conflict means the upstream already has the record (duplicate delivery).
    if replay and code == 409:
        return SUCCESS
    if code >= 500 or code in RETRYABLE_CLIENT_STATUSES:
        return TRANSIENT
    if 400 <= code < 500:
        return CLIENT_ERROR
    # 1xx/3xx on a POST usually comes from captive portals or proxies, not the API.
    return TRANSIENT


def request_path(url: str) -> str:
    path = urlsplit(url or "").path or "/"
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def is_queueable(method: str, url: str, queueable_paths: Iterable[str]) -> bool:
    if (method or "").strip().upper() != "POST":
        return False
    path = request_path(url)
    for prefix in queueable_paths:
        p = request_path(prefix)
        if path == p or path.startswith(p + "/"):
            return True
    return False


def retry_delay_seconds(attempt_count: int, item_id: Optional[str] = None) -> int:
    delay_seconds = min(MAX_RETRY_DELAY_SECONDS, 2 ** max(attempt_count - 1, 0))
    if item_id:
        # Deterministic per-item jitter to reduce synchronized retry storms.
        digest = hashlib.sha1(f"{item_id}:{attempt_count}".encode("utf-8")).hexdigest()
        jitter_window = max(1, min(30, delay_seconds // 5 or 1))
        delay_seconds = min(MAX_RETRY_DELAY_SECONDS, delay_seconds + (int(digest[:8], 16) % (jitter_window + 1)))
    return delay_seconds


def next_attempt_at(attempt_count: int, item_id: Optional[str] = None, *, now: Optional[int] = None) -> int:
    base = now_ms() if now is None else int(now)
    return base + retry_delay_seconds(attempt_count, item_id) * 1000
