import os
import sys

import pytest

# Tests import `backend.*`; make that work without an editable install too.
REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)


@pytest.fixture
def offline_settings(tmp_path, monkeypatch):
    """Settings pointed at a throwaway SQLite file and a fake upstream host."""
    from backend.app.config import Settings

    monkeypatch.setenv("APP_ENV", "test")
    monkeypatch.setenv("OFFLINE_DB_PATH", str(tmp_path / "offline.sqlite"))
    monkeypatch.setenv("OFFLINE_API_BASE_URL", "http://api.test")
    return Settings()
