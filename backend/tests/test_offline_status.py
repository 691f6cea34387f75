import asyncio
import json

import httpx
import pytest

from backend.app.offline.errors import ClientRequestError
from backend.app.offline.models import OutboundRequest
from backend.app.offline.services import build_offline_services


def _services(settings, handler, *, online=True):
    return build_offline_services(settings, transport=httpx.MockTransport(handler), initially_online=online)


def _down(request):
    raise httpx.ConnectError("offline", request=request)


def test_snapshot_tracks_queue_and_sync(offline_settings):
    up = {"ok": False}

    def handler(request):
        if not up["ok"]:
            raise httpx.ConnectError("offline", request=request)
        return httpx.Response(200)

    services = _services(offline_settings, handler)
    status = services.status

    async def go():
        assert await services.initialize(start_background=False) is True
        await services.interceptor.submit(OutboundRequest(url="/api/sales", body='{"id": "s1"}'))
        await services.interceptor.submit(OutboundRequest(url="/api/receipt", body='{"id": "r1"}'))
        queued = status.snapshot()
        up["ok"] = True
        result = await status.force_sync()
        after = status.snapshot()
        await services.dispose()
        return queued, result, after

    queued, result, after = asyncio.run(go())
    assert queued.is_supported is True
    assert queued.queue_size == 2
    assert result.synced == 2
    assert after.queue_size == 0
    assert after.is_syncing is False
    assert after.last_sync is not None
    assert after.next_retry is None


def test_snapshot_follows_connectivity_events(offline_settings):
    services = _services(offline_settings, lambda _r: httpx.Response(200))

    async def go():
        await services.initialize(start_background=False)
        await services.monitor.set_online(False)
        offline = services.status.snapshot().is_online
        skipped = await services.status.force_sync()
        await services.monitor.set_online(True)
        online = services.status.snapshot().is_online
        await services.dispose()
        return offline, skipped, online

    offline, skipped, online = asyncio.run(go())
    assert offline is False
    assert skipped.skipped is True
    assert online is True


def test_unwritable_store_disables_offline_mode(offline_settings, tmp_path):
    blocker = tmp_path / "file"
    blocker.write_text("x")
    offline_settings.offline_db_path = str(blocker / "offline.sqlite")
    services = _services(offline_settings, _down)

    async def go():
        supported = await services.initialize(start_background=False)
        snap = services.status.snapshot()
        await services.dispose()
        return supported, snap

    supported, snap = asyncio.run(go())
    assert supported is False
    assert snap.is_supported is False
    assert snap.queue_size == 0


def test_queue_transaction_goes_direct_when_online(offline_settings):
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(201)

    services = _services(offline_settings, handler)

    async def go():
        await services.initialize(start_background=False)
        out = await services.status.queue_transaction({"id": "T-1", "total": 5})
        stats = await services.store.get_stats()
        await services.dispose()
        return out, stats

    out, stats = asyncio.run(go())
    assert out == {"success": True, "queued": False}
    assert seen == ["/api/transactions"]
    assert stats["queued"] == 0


def test_queue_transaction_falls_back_to_queue_when_unreachable(offline_settings):
    services = _services(offline_settings, _down)

    async def go():
        await services.initialize(start_background=False)
        out = await services.status.queue_transaction({"id": "T-2", "total": 5})
        snap = services.status.snapshot()
        rows = await services.store.list_queued()
        await services.dispose()
        return out, snap, rows

    out, snap, rows = asyncio.run(go())
    assert out == {"success": True, "queued": True, "queue_id": "txn-T-2"}
    assert snap.queue_size == 1
    assert snap.unsynced_count == 1
    assert json.loads(rows[0].body) == {"id": "T-2", "total": 5}


def test_queue_transaction_while_offline_skips_the_network(offline_settings):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200)

    services = _services(offline_settings, handler, online=False)

    async def go():
        await services.initialize(start_background=False)
        out = await services.status.queue_transaction({"id": "T-3"})
        await services.dispose()
        return out

    assert asyncio.run(go())["queued"] is True
    assert seen == []


def test_queue_transaction_surfaces_client_errors(offline_settings):
    services = _services(offline_settings, lambda _r: httpx.Response(400, json={"detail": "bad"}))

    async def go():
        await services.initialize(start_background=False)
        try:
            with pytest.raises(ClientRequestError) as info:
                await services.status.queue_transaction({"id": "T-4"})
            return info.value.status_code, await services.store.get_stats()
        finally:
            await services.dispose()

    status_code, stats = asyncio.run(go())
    assert status_code == 400
    assert stats["queued"] == 0
    assert stats["unsynced"] == 0


def test_cache_and_clear(offline_settings):
    services = _services(offline_settings, _down)

    async def go():
        await services.initialize(start_background=False)
        counts = await services.status.cache_data(products=[{"id": "p1"}], customers=[{"id": "c1"}, {"id": "c2"}])
        cached = await services.status.get_cached_data()
        await services.status.queue_transaction({"id": "T-5"})
        cleared = await services.status.clear_offline_data()
        after = await services.status.get_cached_data()
        await services.dispose()
        return counts, cached, cleared, after

    counts, cached, cleared, after = asyncio.run(go())
    assert counts == {"products": 1, "customers": 2}
    assert cached == {"products": [{"id": "p1"}], "customers": [{"id": "c1"}, {"id": "c2"}]}
    assert cleared.queue_size == 0
    assert cleared.unsynced_count == 0
    assert after == {"products": [], "customers": []}


def test_resubmitting_a_queued_transaction_does_not_post_it_again(offline_settings):
    up = {"ok": False}
    seen = []

    def handler(request):
        if not up["ok"]:
            raise httpx.ConnectError("offline", request=request)
        seen.append(request.url.path)
        return httpx.Response(201)

    services = _services(offline_settings, handler)

    async def go():
        await services.initialize(start_background=False)
        first = await services.status.queue_transaction({"id": "T-6", "total": 5})
        up["ok"] = True
        second = await services.status.queue_transaction({"id": "T-6", "total": 5})
        stats = await services.store.get_stats()
        await services.dispose()
        return first, second, stats

    first, second, stats = asyncio.run(go())
    assert first == second == {"success": True, "queued": True, "queue_id": "txn-T-6"}
    assert seen == []
    assert stats["queued"] == 1
    assert stats["unsynced"] == 1
