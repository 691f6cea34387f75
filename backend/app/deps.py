from fastapi import HTTPException, Request

from .offline.services import OfflineServices


def get_offline_services(request: Request) -> OfflineServices:
    # Built and initialized by the app lifespan; absent only during startup/shutdown.
    services = getattr(request.app.state, "offline", None)
    if services is None:
        raise HTTPException(status_code=503, detail="offline services not ready")
    return services
