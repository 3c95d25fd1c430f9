import sys
from pathlib import Path

import pytest
import structlog

sys.path.insert(0, str(Path(__file__).resolve().parents[1] / "src"))

from jot.store.kv import MemoryStore  # noqa: E402
from jot.store.state import SessionStateStore  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def reset_structlog():
    """Start every test from structlog's defaults and an empty context."""
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    yield
    structlog.contextvars.clear_contextvars()
    structlog.reset_defaults()


@pytest.fixture
def kv() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def state(kv: MemoryStore) -> SessionStateStore:
    return SessionStateStore(kv, clock=lambda: 1_700_000_000.0)
