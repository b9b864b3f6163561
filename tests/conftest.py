from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

# pytest may run without installing the project; ensure repo root is importable.
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from tradesync.core.config import Config  # noqa: E402
from tradesync.core.observability import ObservabilitySink  # noqa: E402
from tradesync.journal.store import SqliteTradeStore  # noqa: E402
from tests.unit._helpers import FakeClock, Router, SleepRecorder  # noqa: E402


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture()
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture()
def test_config(temp_dir: Path) -> Config:
    """Repo defaults with the store pointed at a temp directory."""

    c = Config.from_yaml(REPO_ROOT / "config" / "default.yaml")
    return c.model_copy(update={"store": c.store.model_copy(update={"db_path": temp_dir / "data" / "trades.db"})})


@pytest.fixture()
def sink() -> ObservabilitySink:
    return ObservabilitySink()


@pytest.fixture()
def store(temp_dir: Path) -> Iterator[SqliteTradeStore]:
    s = SqliteTradeStore(temp_dir / "journal.db")
    yield s
    s.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleeps(clock: FakeClock) -> SleepRecorder:
    return SleepRecorder(clock)


@pytest.fixture()
def router() -> Router:
    return Router()
