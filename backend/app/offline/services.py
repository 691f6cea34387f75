from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx

from ..config import Settings
from ..jsonlog import json_log
from .connectivity import ConnectivityMonitor
from .events import EventBus
from .interceptor import NetworkInterceptor
from .status import OfflineStatus
from .store import OfflineStore
from .sync_manager import SyncManager


@dataclass
class OfflineServices:
    settings: Settings
    client: httpx.AsyncClient
    store: OfflineStore
    bus: EventBus
    monitor: ConnectivityMonitor
    interceptor: NetworkInterceptor
    sync_manager: SyncManager
    status: OfflineStatus

    async def initialize(self, *, start_background: bool = True) -> bool:
        supported = await self.status.initialize()
        if start_background:
            await self.monitor.start()
            if supported:
                await self.sync_manager.start()
        json_log("info", "offline.services.ready", supported=supported, background=start_background)
        return supported

    async def dispose(self) -> None:
        await self.monitor.stop()
        await self.sync_manager.stop()
        self.status.dispose()
        await self.store.dispose()
        await self.client.aclose()


def build_offline_services(
    settings: Settings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    initially_online: bool = True,
) -> OfflineServices:
    client = httpx.AsyncClient(
        base_url=settings.offline_api_base_url,
        timeout=settings.delivery_timeout_seconds,
        transport=transport,
    )
    store = OfflineStore(settings.offline_db_path)
    bus = EventBus()
    monitor = ConnectivityMonitor(
        bus,
        client,
        health_path=settings.health_path,
        interval_seconds=settings.probe_interval_seconds,
        timeout_seconds=settings.probe_timeout_seconds,
        initially_online=initially_online,
    )
    interceptor = NetworkInterceptor(
        store,
        bus,
        client,
        queueable_paths=settings.queueable_paths,
        timeout_seconds=settings.delivery_timeout_seconds,
    )
    sync_manager = SyncManager(
        store,
        bus,
        client,
        monitor,
        interval_seconds=settings.sync_interval_seconds,
        timeout_seconds=settings.delivery_timeout_seconds,
        transactions_path=settings.transactions_path,
        reconcile_path=settings.reconcile_path,
    )
    status = OfflineStatus(
        store,
        bus,
        monitor,
        sync_manager,
        client,
        transactions_path=settings.transactions_path,
        timeout_seconds=settings.delivery_timeout_seconds,
    )
    return OfflineServices(
        settings=settings,
        client=client,
        store=store,
        bus=bus,
        monitor=monitor,
        interceptor=interceptor,
        sync_manager=sync_manager,
        status=status,
    )
