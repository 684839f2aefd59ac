import os
import tempfile

# CRITICAL: Set environment variables BEFORE any otc_desk imports.
# otc_desk.config.settings is read at import time.
_TEST_DB_PATH = os.path.join(tempfile.gettempdir(), "test_otc_desk.db")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DB_PATH}"
os.environ["ENVIRONMENT"] = "test"
os.environ["API_V1_STR"] = "/api"
os.environ.pop("INGEST_TOKEN", None)

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from otc_desk import models  # noqa: F401
from otc_desk.config import settings
from otc_desk.database import Base
from otc_desk.models import PricingSource
from otc_desk.runtime import build_runtime
from otc_desk.services.notifier import NotificationError

# Monday 2026-03-02 12:00 in Sao Paulo (UTC-3).
DEFAULT_NOW = datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    """Wall clock the tests move by hand."""

    def __init__(self, start: datetime = DEFAULT_NOW):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakePriceFeed:
    def __init__(self, usdt_binance: float = 5.0, commercial_dollar: float = 4.9):
        self.rates = {
            PricingSource.usdt_binance: usdt_binance,
            PricingSource.commercial_dollar: commercial_dollar,
        }
        self.calls: list[PricingSource] = []
        self.error: Optional[Exception] = None

    async def fetch_base_rate(self, source: PricingSource) -> float:
        self.calls.append(source)
        if self.error is not None:
            raise self.error
        return self.rates[source]


@dataclass
class SentMessage:
    group_jid: str
    text: str
    mentions: list = field(default_factory=list)


class RecordingNotifier:
    def __init__(self):
        self.sent: list[SentMessage] = []
        self.failing_groups: set[str] = set()

    async def send_to_group(self, group_jid, text, mentions=None):
        if group_jid in self.failing_groups:
            raise NotificationError(f"send failed for {group_jid}")
        self.sent.append(SentMessage(group_jid, text, list(mentions or [])))

    def texts(self, group_jid: Optional[str] = None) -> list[str]:
        return [m.text for m in self.sent if group_jid is None or m.group_jid == group_jid]

    def clear(self) -> None:
        self.sent.clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def price_feed():
    return FakePriceFeed()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def session_factory(tmp_path):
    """Fresh sqlite file per test; NullPool so no connection outlives the test's event loop."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'desk.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await engine.dispose()


@pytest.fixture
async def rt(session_factory, price_feed, notifier, clock):
    runtime = build_runtime(
        config=settings,
        session_factory=session_factory,
        price_feed=price_feed,
        notifier=notifier,
        clock=clock,
    )
    try:
        yield runtime
    finally:
        await runtime.sweeper.stop()
        await runtime.dispatcher.drain()
