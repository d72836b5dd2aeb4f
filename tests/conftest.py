import asyncio
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from sqlalchemy.pool import NullPool

from donation_server.config import Settings
from donation_server.services.store import Store

T0 = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        merchant_id="merchant-1",
        secret_key="s3cret",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
    )


@pytest.fixture
def store(settings):
    # NullPool: each asyncio.run() gets its own connections
    store = Store(settings.database_url, poolclass=NullPool)
    asyncio.run(store.open())
    yield store
    asyncio.run(store.close())


@pytest.fixture
def app(settings, store, clock):
    from donation_server.main import create_app

    return create_app(settings=settings, store=store, clock=clock)
