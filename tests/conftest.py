import pytest
import os
import sys
from datetime import datetime, timedelta, timezone

CURRENT_DIR = os.path.dirname(__file__)
PROJECT_ROOT = os.path.dirname(CURRENT_DIR)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from sqlalchemy import create_engine

from lesson_progress.infrastructure.db import make_session_factory
from lesson_progress.infrastructure.models import Base
from lesson_progress.infrastructure.memory import InMemoryProgressStore
from lesson_progress.infrastructure.repositories import SqlAlchemyProgressStore
from lesson_progress.application.use_cases.track_progress import ProgressTracker


class TickingClock:
    """Часы, которые сдвигаются на секунду при каждом вызове"""

    def __init__(self, start=datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        current = self.now
        self.now += timedelta(seconds=1)
        return current


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """Настройка тестового окружения"""
    monkeypatch.setenv("REDIS_URL", "redis://localhost:6379/99")
    monkeypatch.setenv("STATS_CACHE_ENABLED", "false")


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def engine(tmp_path):
    # файл, а не :memory:, чтобы потоки видели одну и ту же базу
    test_engine = create_engine(
        f"sqlite:///{tmp_path / 'test_progress.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def sql_store(engine, clock):
    return SqlAlchemyProgressStore(make_session_factory(engine), clock=clock)


@pytest.fixture
def memory_store(clock):
    return InMemoryProgressStore(clock=clock)


@pytest.fixture(params=["sql", "memory"])
def store(request):
    """Каждый тест с этой фикстурой гоняется на обоих хранилищах"""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def tracker(store):
    return ProgressTracker(store)
