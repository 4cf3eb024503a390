from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))
sys.path.insert(0, str(Path(__file__).resolve().parent))

import pytest

from app.core.config import Settings
from app.db import create_db_engine, create_session_factory, init_db
from app.repositories import CacheStore, MarketRepository, SyncCursor
from app.services.stats_service import StatsAggregator
from fakes import NOW, FakeChainReader
from pipelines.orchestrator import SyncOrchestrator


class FakeClock:
    """Injectable wall clock for expiry and deadline checks."""

    def __init__(self, now: float = NOW) -> None:
        self.now = float(now)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def test_settings(tmp_path, monkeypatch) -> Settings:
    settings = Settings(
        database_url=f"sqlite:///{tmp_path/'predictsync.db'}",
        usdc_contract_address="",
        retry_base_delay_seconds=0,
        retry_max_delay_seconds=0,
        sync_inter_call_delay_seconds=0,
        lock_wait_seconds=0,
        lock_ttl_seconds=30,
    )
    monkeypatch.setattr("app.core.config.get_settings", lambda: settings)
    monkeypatch.setattr("app.core.config.settings", settings)
    return settings


@pytest.fixture
def session_factory(test_settings):
    engine = create_db_engine(test_settings.resolved_database_url)
    init_db(bind=engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(session_factory, clock) -> CacheStore:
    return CacheStore(session_factory, clock=clock, lock_poll_seconds=0.01)


@pytest.fixture
def repository(store) -> MarketRepository:
    return MarketRepository(store)


@pytest.fixture
def cursor(store, test_settings) -> SyncCursor:
    return SyncCursor(store, lock_ttl=test_settings.lock_ttl_seconds, lock_wait=0)


@pytest.fixture
def stats(repository, clock, test_settings) -> StatsAggregator:
    return StatsAggregator(repository, ttl=test_settings.stats_ttl_seconds, clock=clock)


@pytest.fixture
def chain() -> FakeChainReader:
    return FakeChainReader()


@pytest.fixture
def orchestrator(chain, repository, cursor, test_settings, clock, stats) -> SyncOrchestrator:
    return SyncOrchestrator(
        chain,
        repository,
        cursor,
        settings=test_settings,
        clock=clock,
        sleep=lambda _seconds: None,
        stats=stats,
    )
