from dataclasses import asdict
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field

from ..deps import get_offline_services
from ..offline.models import OutboundRequest
from ..offline.services import OfflineServices

router = APIRouter(prefix="/offline", tags=["offline"])

SUBMIT_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


class SubmitIn(BaseModel):
    url: str = Field(min_length=1)
    method: str = "POST"
    headers: dict[str, str] = {}
    body: str = ""


class QueueTransactionIn(BaseModel):
    transaction: dict[str, Any]


class CacheIn(BaseModel):
    products: Optional[list[dict[str, Any]]] = None
    customers: Optional[list[dict[str, Any]]] = None


class ConnectivityIn(BaseModel):
    online: bool


def _status_payload(services: OfflineServices) -> dict:
    return {
        **services.status.as_dict(),
        "sync_state": services.sync_manager.state,
        "has_pending": services.status.snapshot().queue_size > 0,
    }


@router.get("/status")
async def offline_status(services: OfflineServices = Depends(get_offline_services)):
    await services.status.refresh()
    return _status_payload(services)


@router.post("/sync")
async def force_sync(services: OfflineServices = Depends(get_offline_services)):
    result = await services.status.force_sync()
    return {"result": asdict(result), "status": _status_payload(services)}


@router.post("/submit")
async def submit_request(data: SubmitIn, services: OfflineServices = Depends(get_offline_services)):
    method = (data.method or "").strip().upper()
    if method not in SUBMIT_METHODS:
        raise HTTPException(status_code=400, detail="unsupported method")
    upstream = await services.interceptor.submit(
        OutboundRequest(url=data.url, method=method, headers=dict(data.headers), body=data.body)
    )
    # Pass the upstream (or synthetic) response through unmodified.
    passthrough = {
        k: v for k, v in upstream.headers.items() if k.lower() in {"x-offline-queued", "x-request-id", "location"}
    }
    return Response(
        content=upstream.content,
        status_code=upstream.status_code,
        media_type=upstream.headers.get("content-type"),
        headers=passthrough,
    )


@router.post("/transactions")
async def queue_transaction(data: QueueTransactionIn, services: OfflineServices = Depends(get_offline_services)):
    if not str(data.transaction.get("id") or "").strip():
        raise HTTPException(status_code=400, detail="transaction id is required")
    return await services.status.queue_transaction(data.transaction)


@router.get("/transactions")
async def list_transactions(unsynced: bool = False, services: OfflineServices = Depends(get_offline_services)):
    if unsynced:
        rows = await services.store.list_unsynced()
    else:
        rows = await services.store.list_transactions()
    return {"transactions": [asdict(r) for r in rows]}


@router.get("/queue")
async def list_queue(services: OfflineServices = Depends(get_offline_services)):
    rows = await services.store.list_queued()
    return {"queue": [asdict(r) for r in rows]}


@router.delete("/queue/{request_id}")
async def purge_queued_request(request_id: str, services: OfflineServices = Depends(get_offline_services)):
    if not await services.status.purge_request(request_id):
        raise HTTPException(status_code=404, detail="queued request not found")
    return {"ok": True, "status": _status_payload(services)}


@router.get("/cache")
async def get_cache(services: OfflineServices = Depends(get_offline_services)):
    return await services.status.get_cached_data()


@router.put("/cache")
async def put_cache(data: CacheIn, services: OfflineServices = Depends(get_offline_services)):
    try:
        counts = await services.status.cache_data(products=data.products, customers=data.customers)
    except ValueError as ex:
        raise HTTPException(status_code=400, detail=str(ex)) from ex
    return {"cached": counts}


@router.delete("/data")
async def clear_offline_data(services: OfflineServices = Depends(get_offline_services)):
    await services.status.clear_offline_data()
    return {"ok": True, "status": _status_payload(services)}


@router.post("/connectivity")
async def report_connectivity(data: ConnectivityIn, services: OfflineServices = Depends(get_offline_services)):
    """
    The POS front end reports browser online/offline transitions here so the
    pipeline does not have to wait for the next health probe.
    """
    changed = await services.monitor.set_online(data.online)
    return {"changed": changed, "status": _status_payload(services)}
