from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.sermon_api.infra.cache.ingestion_cache import ingestion_cache
from src.sermon_api.infra.db import inmemory as inmemory_repos
from src.sermon_api.services.users.service import user_directory


class FakeClock:
    """Manually advanced clock for cache expiry tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 6, 2, 10, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture(autouse=True)
def _reset_process_state():
    """Process-wide singletons are shared across tests; start each one clean."""

    ingestion_cache.clear()
    inmemory_repos.session_repository.clear()
    user_directory.clear()
    yield
    ingestion_cache.clear()
    inmemory_repos.session_repository.clear()
