import asyncio
import json

import httpx
import pytest

from backend.app.config import DEFAULT_QUEUEABLE_PATHS
from backend.app.offline.errors import ClientRequestError, ConnectivityFailure
from backend.app.offline.events import QUEUED, EventBus
from backend.app.offline.interceptor import QUEUED_HEADER, NetworkInterceptor
from backend.app.offline.models import OutboundRequest
from backend.app.offline.store import OfflineStore


def _setup(tmp_path, handler, *, init_store=True):
    store = OfflineStore(str(tmp_path / "offline.sqlite"))
    if init_store:
        asyncio.run(store.initialize())
    bus = EventBus()
    queued_events = []
    bus.subscribe(QUEUED, queued_events.append)
    client = httpx.AsyncClient(base_url="http://api.test", transport=httpx.MockTransport(handler))
    interceptor = NetworkInterceptor(store, bus, client, queueable_paths=DEFAULT_QUEUEABLE_PATHS)
    return interceptor, store, queued_events


def _down(request):
    raise httpx.ConnectError("connection refused", request=request)


SALE = OutboundRequest(
    url="/api/sales",
    method="POST",
    headers={"Content-Type": "application/json", "X-Device-Id": "pos-7"},
    body='{"id": "s1", "total": 9.5}',
)


def test_success_passes_upstream_response_through(tmp_path):
    interceptor, store, events = _setup(tmp_path, lambda _r: httpx.Response(201, json={"id": "srv-1"}))
    res = asyncio.run(interceptor.submit(SALE))
    assert res.status_code == 201
    assert res.json() == {"id": "srv-1"}
    assert asyncio.run(store.get_stats())["queued"] == 0
    assert events == []


def test_network_failure_on_queueable_request_queues_and_returns_202(tmp_path):
    interceptor, store, events = _setup(tmp_path, _down)
    res = asyncio.run(interceptor.submit(SALE))

    assert res.status_code == 202
    assert res.headers[QUEUED_HEADER] == "1"
    payload = res.json()
    assert payload["success"] is True
    assert payload["offline"] is True
    assert payload["queued"] is True

    rows = asyncio.run(store.list_queued())
    assert len(rows) == 1
    assert rows[0].id == payload["queue_id"]
    assert rows[0].body == SALE.body
    assert rows[0].headers == SALE.headers
    assert len(events) == 1
    assert events[0].queue_size == 1


def test_timeout_is_treated_as_connectivity_failure(tmp_path):
    def slow(request):
        raise httpx.ReadTimeout("timed out", request=request)

    interceptor, store, _events = _setup(tmp_path, slow)
    res = asyncio.run(interceptor.submit(SALE))
    assert res.status_code == 202
    assert asyncio.run(store.get_stats())["queued"] == 1


@pytest.mark.parametrize("status", [500, 503, 429])
def test_transient_status_on_queueable_request_is_queued(tmp_path, status):
    interceptor, store, _events = _setup(tmp_path, lambda _r: httpx.Response(status))
    res = asyncio.run(interceptor.submit(SALE))
    assert res.status_code == 202
    assert asyncio.run(store.get_stats())["queued"] == 1


def test_client_error_is_surfaced_and_not_queued(tmp_path):
    interceptor, store, events = _setup(tmp_path, lambda _r: httpx.Response(422, json={"detail": "bad total"}))
    with pytest.raises(ClientRequestError) as info:
        asyncio.run(interceptor.submit(SALE))
    assert info.value.status_code == 422
    assert info.value.response.json() == {"detail": "bad total"}
    assert asyncio.run(store.get_stats())["queued"] == 0
    assert events == []


def test_non_queueable_request_gets_synthetic_503_when_unreachable(tmp_path):
    interceptor, store, _events = _setup(tmp_path, _down)
    res = asyncio.run(interceptor.submit(OutboundRequest(url="/api/products", method="GET")))
    assert res.status_code == 503
    assert json.loads(res.content) == {"success": False, "offline": True, "error": "No internet connection"}
    assert asyncio.run(store.get_stats())["queued"] == 0


def test_non_queueable_request_returns_upstream_errors_untouched(tmp_path):
    interceptor, _store, _events = _setup(tmp_path, lambda _r: httpx.Response(500, text="boom"))
    res = asyncio.run(interceptor.submit(OutboundRequest(url="/api/sales", method="PUT", body="{}")))
    assert res.status_code == 500
    assert res.text == "boom"


def test_without_storage_a_network_failure_is_raised(tmp_path):
    interceptor, _store, events = _setup(tmp_path, _down, init_store=False)
    with pytest.raises(ConnectivityFailure):
        asyncio.run(interceptor.submit(SALE))
    assert events == []


def test_live_request_is_sent_verbatim(tmp_path):
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["device"] = request.headers.get("X-Device-Id")
        seen["body"] = request.content.decode("utf-8")
        return httpx.Response(200)

    interceptor, _store, _events = _setup(tmp_path, handler)
    asyncio.run(interceptor.submit(SALE))
    assert seen == {"method": "POST", "path": "/api/sales", "device": "pos-7", "body": SALE.body}
