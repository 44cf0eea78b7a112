import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from cortex.core.config import Settings, get_settings
from cortex.inference.stub_engine import StubEngine
from cortex.runtime import create_runtime


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path, monkeypatch):
    db_path = tmp_path / "test_cortex.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("MEMORY_PATH", "")
    monkeypatch.setenv("EMBEDDING_DIMENSION", "64")
    monkeypatch.setenv("GENERATION_TIMEOUT_SEC", "0")
    get_settings.cache_clear()
    yield Settings()
    get_settings.cache_clear()


@pytest.fixture
def stub_engine():
    return StubEngine(embedding_dim=64)


@pytest.fixture
async def runtime(settings, stub_engine):
    runtime = await create_runtime(settings, inference_engine=stub_engine)
    yield runtime
    await runtime.close()


@pytest.fixture
async def session(runtime):
    return await runtime.open_session("session-a")
