from __future__ import annotations

from typing import Iterable

import httpx

from ..jsonlog import json_log
from .errors import ClientRequestError, ConnectivityFailure, StorageError, StorageUnavailable
from .events import QUEUED, EventBus, RequestQueued
from .models import OutboundRequest, QueuedRequest
from .policy import CLIENT_ERROR, SUCCESS, classify_status, is_queueable
from .store import OfflineStore

QUEUED_MESSAGE = "Transaction queued for sync when online"
QUEUED_HEADER = "X-Offline-Queued"


def queued_response(request_id: str) -> httpx.Response:
    return httpx.Response(
        202,
        json={
            "success": True,
            "offline": True,
            "queued": True,
            "message": QUEUED_MESSAGE,
            "queue_id": request_id,
        },
        headers={QUEUED_HEADER: "1"},
    )


def offline_response() -> httpx.Response:
    return httpx.Response(
        503,
        json={"success": False, "offline": True, "error": "No internet connection"},
    )


class NetworkInterceptor:
    """
    Delivers outbound requests live and, for allow-listed mutations, falls back
    to the durable queue when the failure is connectivity-related.
    """

    def __init__(
        self,
        store: OfflineStore,
        bus: EventBus,
        client: httpx.AsyncClient,
        *,
        queueable_paths: Iterable[str],
        timeout_seconds: float = 10.0,
    ):
        self._store = store
        self._bus = bus
        self._client = client
        self._queueable_paths = list(queueable_paths)
        self._timeout = timeout_seconds

    def is_queueable(self, request: OutboundRequest) -> bool:
        return is_queueable(request.method, request.url, self._queueable_paths)

    async def _deliver(self, request: OutboundRequest) -> httpx.Response:
        return await self._client.request(
            request.method.upper(),
            request.url,
            headers=request.headers,
            content=request.body.encode("utf-8") if request.body else None,
            timeout=self._timeout,
        )

    async def submit(self, request: OutboundRequest) -> httpx.Response:
        queueable = self.is_queueable(request)
        try:
            response = await self._deliver(request)
        except httpx.TransportError as ex:
            # TransportError covers connect/read errors and timeouts.
            if not queueable:
                json_log("warning", "offline.request.unreachable", url=request.url, method=request.method, error=str(ex))
                return offline_response()
            return await self._queue(request, f"network error: {ex}")

        if not queueable:
            return response

        outcome = classify_status(response.status_code)
        if outcome == SUCCESS:
            return response
        if outcome == CLIENT_ERROR:
            json_log(
                "warning",
                "offline.request.rejected",
                url=request.url,
                method=request.method,
                status_code=response.status_code,
            )
            raise ClientRequestError(response)
        return await self._queue(request, f"HTTP {response.status_code}")

    async def _queue(self, request: OutboundRequest, reason: str) -> httpx.Response:
        if not self._store.is_ready:
            # Offline mode is disabled; fail hard instead of pretending the sale went through.
            raise ConnectivityFailure(reason)
        queued = QueuedRequest.from_outbound(request)
        try:
            await self._store.enqueue(queued)
            stats = await self._store.get_stats()
        except (StorageUnavailable, StorageError) as ex:
            raise ConnectivityFailure(f"{reason}; queueing failed: {ex}") from ex

        json_log(
            "info",
            "offline.request.queued",
            id=queued.id,
            url=queued.url,
            method=queued.method,
            reason=reason,
            queue_size=stats["queued"],
        )
        await self._bus.emit(QUEUED, RequestQueued(id=queued.id, url=queued.url, queue_size=stats["queued"]))
        return queued_response(queued.id)
