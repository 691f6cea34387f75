import httpx
from fastapi.testclient import TestClient

from backend.app.main import create_app
from backend.app.offline.errors import DuplicateQueueEntry


class Upstream:
    def __init__(self):
        self.down = False
        self.reject = False
        self.seen = []

    def __call__(self, request: httpx.Request):
        if self.down:
            raise httpx.ConnectError("offline", request=request)
        self.seen.append((request.method, request.url.path))
        if self.reject:
            return httpx.Response(422, json={"detail": "total mismatch"})
        return httpx.Response(201, json={"ok": True})


def _client(settings, upstream):
    app = create_app(settings, transport=httpx.MockTransport(upstream), start_background=False)
    return TestClient(app)


def test_health_and_status(offline_settings):
    with _client(offline_settings, Upstream()) as client:
        res = client.get("/health")
        assert res.status_code == 200
        assert res.json()["offline_supported"] is True
        assert res.headers["X-Request-Id"]

        res = client.get("/offline/status")
        assert res.status_code == 200
        body = res.json()
        assert body["queue_size"] == 0
        assert body["is_supported"] is True
        assert body["sync_state"] == "idle"
        assert body["has_pending"] is False


def test_submit_queues_when_upstream_is_down_then_sync_drains(offline_settings):
    upstream = Upstream()
    upstream.down = True
    with _client(offline_settings, upstream) as client:
        res = client.post(
            "/offline/submit",
            json={"url": "/api/sales", "headers": {"Content-Type": "application/json"}, "body": '{"id": "s1"}'},
        )
        assert res.status_code == 202
        assert res.headers["X-Offline-Queued"] == "1"
        queue_id = res.json()["queue_id"]

        queue = client.get("/offline/queue").json()["queue"]
        assert [q["id"] for q in queue] == [queue_id]
        assert queue[0]["body"] == '{"id": "s1"}'
        assert client.get("/offline/status").json()["has_pending"] is True

        upstream.down = False
        res = client.post("/offline/sync")
        assert res.status_code == 200
        payload = res.json()
        assert payload["result"]["synced"] == 1
        assert payload["status"]["queue_size"] == 0
        assert upstream.seen == [("POST", "/api/sales")]


def test_submit_surfaces_client_errors(offline_settings):
    upstream = Upstream()
    upstream.reject = True
    with _client(offline_settings, upstream) as client:
        res = client.post("/offline/submit", json={"url": "/api/sales", "body": "{}"})
        assert res.status_code == 422
        assert res.json() == {"detail": "total mismatch"}
        assert client.get("/offline/status").json()["queue_size"] == 0


def test_submit_non_queueable_while_down_returns_503(offline_settings):
    upstream = Upstream()
    upstream.down = True
    with _client(offline_settings, upstream) as client:
        res = client.post("/offline/submit", json={"url": "/api/products", "method": "GET"})
        assert res.status_code == 503
        assert res.json()["offline"] is True


def test_submit_rejects_unknown_method(offline_settings):
    with _client(offline_settings, Upstream()) as client:
        res = client.post("/offline/submit", json={"url": "/api/sales", "method": "TRACE"})
        assert res.status_code == 400


def test_transactions_endpoints(offline_settings):
    upstream = Upstream()
    upstream.down = True
    with _client(offline_settings, upstream) as client:
        res = client.post("/offline/transactions", json={"transaction": {"id": "T-9", "total": 1}})
        assert res.status_code == 200
        assert res.json() == {"success": True, "queued": True, "queue_id": "txn-T-9"}

        res = client.post("/offline/transactions", json={"transaction": {"total": 1}})
        assert res.status_code == 400

        rows = client.get("/offline/transactions", params={"unsynced": "true"}).json()["transactions"]
        assert [r["id"] for r in rows] == ["T-9"]
        assert rows[0]["status"] == "pending"

        res = client.delete("/offline/queue/txn-T-9")
        assert res.status_code == 200
        assert res.json()["status"]["queue_size"] == 0
        assert client.delete("/offline/queue/txn-T-9").status_code == 404


def test_resubmitting_a_queued_transaction_is_idempotent(offline_settings):
    upstream = Upstream()
    upstream.down = True
    with _client(offline_settings, upstream) as client:
        for _ in range(2):
            res = client.post("/offline/transactions", json={"transaction": {"id": "T-9", "total": 1}})
            assert res.status_code == 200
            assert res.json() == {"success": True, "queued": True, "queue_id": "txn-T-9"}

        upstream.down = False
        res = client.post("/offline/transactions", json={"transaction": {"id": "T-9", "total": 1}})
        assert res.json()["queued"] is True
        assert upstream.seen == []
        assert client.get("/offline/status").json()["queue_size"] == 1


def test_duplicate_queue_entry_maps_to_conflict(offline_settings):
    with _client(offline_settings, Upstream()) as client:
        async def duplicate(_transaction):
            raise DuplicateQueueEntry("txn-T-9")

        client.app.state.offline.status.queue_transaction = duplicate
        res = client.post("/offline/transactions", json={"transaction": {"id": "T-9"}})
        assert res.status_code == 409
        assert res.json()["detail"] == "already queued"
        assert res.json()["queue_id"] == "txn-T-9"


def test_purged_transaction_is_not_reconciled_later(offline_settings):
    upstream = Upstream()
    upstream.down = True
    with _client(offline_settings, upstream) as client:
        client.post("/offline/transactions", json={"transaction": {"id": "T-9", "total": 1}})
        assert client.delete("/offline/queue/txn-T-9").status_code == 200

        rows = client.get("/offline/transactions", params={"unsynced": "true"}).json()["transactions"]
        assert rows == []
        assert client.get("/offline/status").json()["unsynced_count"] == 0

        upstream.down = False
        res = client.post("/offline/sync")
        assert res.json()["result"]["synced"] == 0
        assert upstream.seen == []


def test_cache_and_clear_endpoints(offline_settings):
    with _client(offline_settings, Upstream()) as client:
        res = client.put("/offline/cache", json={"products": [{"id": "p1", "name": "Tea"}]})
        assert res.json() == {"cached": {"products": 1}}
        assert client.put("/offline/cache", json={"customers": [{"name": "x"}]}).status_code == 400

        cache = client.get("/offline/cache").json()
        assert cache == {"products": [{"id": "p1", "name": "Tea"}], "customers": []}

        res = client.delete("/offline/data")
        assert res.json()["ok"] is True
        assert client.get("/offline/cache").json() == {"products": [], "customers": []}


def test_connectivity_report_toggles_online_flag(offline_settings):
    with _client(offline_settings, Upstream()) as client:
        res = client.post("/offline/connectivity", json={"online": False})
        body = res.json()
        assert body["changed"] is True
        assert body["status"]["is_online"] is False

        res = client.post("/offline/sync")
        assert res.json()["result"]["skipped"] is True

        res = client.post("/offline/connectivity", json={"online": False})
        assert res.json()["changed"] is False


def test_validation_errors_use_plain_detail(offline_settings):
    with _client(offline_settings, Upstream()) as client:
        res = client.post("/offline/connectivity", json={"online": "maybe"})
        assert res.status_code == 422
        assert res.json()["detail"] == "validation failed"
