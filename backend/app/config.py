import os
from typing import List


DEFAULT_QUEUEABLE_PATHS = [
    "/api/sales",
    "/api/transactions",
    "/api/receipt",
    "/api/inventory/update",
]


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def _env_float(self, name: str, default: float) -> float:
        raw = (os.getenv(name) or "").strip()
        if not raw:
            return default
        try:
            value = float(raw)
        except ValueError:
            return default
        return value if value > 0 else default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # Comma-separated list of allowed CORS origins for the POS front end.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )

        # Local durable store (survives restarts of the POS terminal).
        self.offline_db_path = (os.getenv("OFFLINE_DB_PATH") or "").strip() or os.path.join(
            os.getcwd(), "pos_offline.sqlite"
        )
        # Upstream POS API that queued requests are delivered/replayed against.
        self.offline_api_base_url = (
            (os.getenv("OFFLINE_API_BASE_URL") or "").strip() or "http://localhost:3000"
        ).rstrip("/")
        self.delivery_timeout_seconds = self._env_float("OFFLINE_DELIVERY_TIMEOUT_SECONDS", 10.0)
        self.sync_interval_seconds = self._env_float("OFFLINE_SYNC_INTERVAL_SECONDS", 30.0)
        self.probe_interval_seconds = self._env_float("OFFLINE_PROBE_INTERVAL_SECONDS", 15.0)
        self.probe_timeout_seconds = self._env_float("OFFLINE_PROBE_TIMEOUT_SECONDS", 0.8)
        self.health_path = (os.getenv("OFFLINE_HEALTH_PATH") or "").strip() or "/api/health"
        # Only these mutation endpoints may be deferred; everything else is delivered live.
        self.queueable_paths = self._split_csv(
            os.getenv("OFFLINE_QUEUEABLE_PATHS", "").strip(),
            default=list(DEFAULT_QUEUEABLE_PATHS),
        )
        self.transactions_path = (os.getenv("OFFLINE_TRANSACTIONS_PATH") or "").strip() or "/api/transactions"
        self.reconcile_path = (os.getenv("OFFLINE_RECONCILE_PATH") or "").strip() or "/api/transactions/sync"

settings = Settings()
