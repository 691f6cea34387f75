from contextlib import asynccontextmanager
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response

from .config import Settings, settings as default_settings
from .jsonlog import json_log
from .offline.errors import (
    ClientRequestError,
    ConnectivityFailure,
    DuplicateQueueEntry,
    StorageError,
    StorageUnavailable,
)
from .offline.services import build_offline_services
from .routers.offline import router as offline_router

STARTED_AT_UTC = datetime.now(timezone.utc)


def _current_request_id(req: Request) -> str:
    return getattr(req.state, "request_id", "") or req.headers.get("x-request-id") or "startup"


def create_app(
    settings: Optional[Settings] = None,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    start_background: bool = True,
) -> FastAPI:
    settings = settings or default_settings

    @asynccontextmanager
    async def _lifespan(app: FastAPI):
        services = build_offline_services(settings, transport=transport)
        supported = await services.initialize(start_background=start_background)
        app.state.offline = services
        json_log(
            "info",
            "startup.offline_ready",
            env=settings.env,
            version=settings.api_version,
            supported=supported,
            db_path=settings.offline_db_path,
        )
        try:
            yield
        finally:
            app.state.offline = None
            await services.dispose()
            json_log("info", "shutdown.offline_disposed", env=settings.env)

    app = FastAPI(title="POS Offline Sync API", version=settings.api_version, lifespan=_lifespan)

    def _error_content(detail: str, exc: Exception) -> dict:
        content = {"detail": detail}
        if settings.env in {"local", "dev"}:
            content["error"] = str(exc)
        return content

    @app.exception_handler(StorageUnavailable)
    def _storage_unavailable(_req: Request, exc: Exception):
        return JSONResponse(status_code=503, content=_error_content("offline storage unavailable", exc))

    @app.exception_handler(StorageError)
    def _storage_error(_req: Request, exc: Exception):
        return JSONResponse(status_code=500, content=_error_content("offline storage error", exc))

    @app.exception_handler(DuplicateQueueEntry)
    def _duplicate_queue_entry(_req: Request, exc: DuplicateQueueEntry):
        content = _error_content("already queued", exc)
        content["queue_id"] = exc.request_id
        return JSONResponse(status_code=409, content=content)

    @app.exception_handler(ConnectivityFailure)
    def _connectivity_failure(_req: Request, exc: Exception):
        return JSONResponse(status_code=503, content=_error_content("upstream unreachable", exc))

    @app.exception_handler(ClientRequestError)
    def _client_request_error(_req: Request, exc: ClientRequestError):
        # Surface the upstream rejection as-is so the POS shows the real reason.
        upstream = exc.response
        return Response(
            content=upstream.content,
            status_code=upstream.status_code,
            media_type=upstream.headers.get("content-type"),
        )

    @app.exception_handler(RequestValidationError)
    def _request_validation_error(_req: Request, exc: Exception):
        content = {"detail": "validation failed"}
        if settings.env in {"local", "dev"} and hasattr(exc, "errors"):
            content["errors"] = exc.errors()
        return JSONResponse(status_code=422, content=content)

    @app.exception_handler(Exception)
    def _unhandled_exception(req: Request, exc: Exception):
        rid = _current_request_id(req)
        json_log(
            "error",
            "http.request.unhandled",
            request_id=rid,
            method=req.method,
            path=req.url.path,
            error=str(exc),
        )
        content = {"detail": "internal error", "request_id": rid}
        if settings.env in {"local", "dev"}:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)

    # Correlation id + basic structured request logging.
    @app.middleware("http")
    async def _request_logging(request: Request, call_next):
        rid = (request.headers.get("X-Request-Id") or "").strip() or uuid.uuid4().hex
        request.state.request_id = rid
        started = time.time()
        path = request.url.path
        method = request.method
        client_ip = (request.client.host if request.client else None)

        try:
            response = await call_next(request)
        except Exception as exc:
            dur_ms = int((time.time() - started) * 1000)
            json_log(
                "error",
                "http.request.error",
                request_id=rid,
                method=method,
                path=path,
                client_ip=client_ip,
                duration_ms=dur_ms,
                error=str(exc),
            )
            raise

        response.headers["X-Request-Id"] = rid
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        if path != "/health":
            dur_ms = int((time.time() - started) * 1000)
            json_log(
                "info",
                "http.request",
                request_id=rid,
                method=method,
                path=path,
                status_code=response.status_code,
                client_ip=client_ip,
                duration_ms=dur_ms,
            )
        return response

    # The POS front end runs on a different origin during development.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Offline-Queued", "X-Request-Id"],
    )
    app.include_router(offline_router)

    @app.get("/health")
    def health(req: Request):
        services = getattr(req.app.state, "offline", None)
        status = services.status.snapshot() if services else None
        content = {
            "status": "ok",
            "env": settings.env,
            "service": "pos-offline-sync",
            "version": settings.api_version,
            "started_at": STARTED_AT_UTC.isoformat(),
            "request_id": _current_request_id(req),
            "offline_supported": bool(status and status.is_supported),
            "online": bool(status and status.is_online),
        }
        if status is None:
            content["status"] = "starting"
            return JSONResponse(status_code=503, content=content)
        return content

    @app.get("/health/live")
    def health_live(req: Request):
        return {
            "status": "ok",
            "env": settings.env,
            "service": "pos-offline-sync",
            "request_id": _current_request_id(req),
        }

    @app.get("/meta")
    def meta():
        return {
            "service": "pos-offline-sync",
            "version": settings.api_version,
            "env": settings.env,
            "uptime_seconds": int((datetime.now(timezone.utc) - STARTED_AT_UTC).total_seconds()),
            "started_at": STARTED_AT_UTC.isoformat(),
        }

    return app


app = create_app()
