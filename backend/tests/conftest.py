"""
Pytest configuration for backend tests.

Why: Force AnyIO to use the asyncio backend (the engine is written against
asyncio primitives) and make `backend/` importable without installation.
"""
import sys
from pathlib import Path

import pytest
import structlog

# Ensure packages in backend/ and the shared fakes in backend/tests are importable
REPO_ROOT = Path(__file__).resolve().parents[2]
BACKEND_DIR = REPO_ROOT / "backend"
TESTS_DIR = BACKEND_DIR / "tests"
for p in (str(REPO_ROOT), str(BACKEND_DIR), str(TESTS_DIR)):
    if p not in sys.path:
        sys.path.insert(0, p)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_structlog_config():
    """Keep structlog defaults per test so `capture_logs()` sees every event.

    Why:
        `configure_logging(force=True)` in one test would otherwise leak a
        level filter into later tests.
    """
    structlog.reset_defaults()
    yield
    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def _clear_engine_env(monkeypatch: pytest.MonkeyPatch):
    """Clear env-driven settings that may leak from the developer shell."""
    for var in (
        "ENVIRONMENT",
        "SUPABASE_URL",
        "SUPABASE_ANON_KEY",
        "OAUTH_REDIRECT_URL",
        "AUTH_SAFETY_TIMEOUT_SECONDS",
        "ROLE_INTENT_TTL_SECONDS",
    ):
        monkeypatch.delenv(var, raising=False)
    yield
