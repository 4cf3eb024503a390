from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.domain import ContractVersion, StakePosition, StakeRecord, TokenType
from app.errors import ProviderUnavailable, RunAborted, StoreUnavailable
from app.main import _market_repository, _market_service, app
from app.services.market_service import MarketService
from chain.normalize import canonicalize_market
from fakes import ALICE, BOB, DAY, NOW, stake_tuple, v2_tuple


@pytest.fixture
def service(repository, stats, clock, orchestrator) -> MarketService:
    return MarketService(repository, stats=stats, orchestrator_factory=lambda: orchestrator, clock=clock)


@pytest.fixture
def client(repository, service):
    """Test client wired to the temporary cache; overrides are cleared afterwards."""
    app.dependency_overrides[_market_repository] = lambda: repository
    app.dependency_overrides[_market_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _save(repository, numeric_id: int, **overrides) -> None:
    record = canonicalize_market(ContractVersion.V2, numeric_id, v2_tuple(**overrides), participants=[ALICE])
    repository.save_market(record)


def test_healthcheck(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_healthcheck_reports_store_outage(client, repository, monkeypatch):
    def unavailable():
        raise StoreUnavailable("could not connect")

    monkeypatch.setattr(repository.store, "ping", unavailable)

    response = client.get("/healthz")

    assert response.status_code == 503


def test_list_markets_with_filters(client, repository):
    _save(repository, 1, category="sports")
    _save(repository, 2)
    _save(repository, 3, deadline=NOW - DAY)

    response = client.get("/markets", params={"category": "crypto", "sort": "id", "order": "asc"})
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 2
    assert [item["id"] for item in body["items"]] == ["pred_v2_2", "pred_v2_3"]

    active = client.get("/markets", params={"active_only": True}).json()
    assert {item["id"] for item in active["items"]} == {"pred_v2_1", "pred_v2_2"}


def test_list_markets_rejects_unknown_status(client):
    response = client.get("/markets", params={"status": "archived"})

    assert response.status_code == 422


def test_get_market(client, repository):
    _save(repository, 7, image_url="https://www.geckoterminal.com/eth/pools/0xpool7?embed=1", question="Will ETH hit 5k?")

    response = client.get("/markets/pred_v2_7")

    assert response.status_code == 200
    body = response.json()
    assert body["numeric_id"] == 7
    assert body["status"] == "active"
    assert body["display"] == {"include_chart": True, "selected_crypto": "0xpool7", "extras": {}}
    assert body["pools"]["ETH"] == {"yes": 0, "no": 0}
    assert body["end_date"] == "2023-11-15"
    assert body["end_time"] == "22:13"


def test_get_market_not_found(client):
    assert client.get("/markets/pred_v2_404").status_code == 404
    assert client.get("/markets/not-a-key").status_code == 404


def test_stake_endpoints(client, repository):
    repository.save_stake(StakeRecord(ALICE, "pred_v2_1", {TokenType.ETH: StakePosition(5, 0, False)}))
    repository.save_stake(StakeRecord(ALICE, "pred_v2_2", {TokenType.SWIPE: StakePosition(0, 2, True)}))

    stake = client.get(f"/stakes/{ALICE.upper().replace('0X', '0x')}/pred_v2_1")
    assert stake.status_code == 200
    assert stake.json()["positions"]["ETH"] == {"yes_amount": 5, "no_amount": 0, "claimed": False}

    assert client.get(f"/stakes/{BOB}/pred_v2_1").status_code == 404

    listing = client.get(f"/users/{ALICE}/stakes").json()
    assert listing["total"] == 2
    assert [item["market_key"] for item in listing["items"]] == ["pred_v2_1", "pred_v2_2"]


def test_stats_endpoint_serves_snapshot(client, repository):
    _save(repository, 1, yes_total=10)

    first = client.get("/stats").json()
    _save(repository, 2)
    cached = client.get("/stats").json()
    refreshed = client.get("/stats", params={"refresh": True}).json()

    assert first["total_markets"] == 1
    assert first["volume_by_token"]["ETH"] == 10
    assert cached["total_markets"] == 1
    assert refreshed["total_markets"] == 2


def test_targeted_sync_endpoint(client, chain, repository):
    chain.add_market(
        ContractVersion.V2,
        3,
        v2_tuple(yes_total=4),
        participants=[BOB],
        stakes={BOB: {TokenType.ETH: stake_tuple(yes=4)}},
    )

    response = client.post("/sync/targeted", json={"version": "v2", "id": 3})

    assert response.status_code == 200
    body = response.json()
    assert body["strategy"] == "targeted"
    assert body["synced"] == 1
    assert body["stakes_written"] == 1
    assert repository.get_market("pred_v2_3").participants == [BOB]


def test_targeted_sync_requires_id(client):
    response = client.post("/sync/targeted", json={"version": "v2"})

    assert response.status_code == 422


def test_unknown_strategy_and_version_are_rejected(client):
    assert client.post("/sync/everything", json={}).status_code == 422
    assert client.post("/sync/full", json={"version": "v3"}).status_code == 422


def test_aborted_sync_returns_503_with_partial_summary(client, chain):
    chain.fail_always("read_entity_count", ContractVersion.V2, ProviderUnavailable("connection refused"))

    response = client.post("/sync/full", json={"version": "v2"})

    assert response.status_code == 503
    body = response.json()
    assert body["aborted"] is True
    assert body["abort_reason"].startswith("ProviderUnavailable")


def test_aborted_sync_without_summary(repository):
    orchestrator = MagicMock()
    orchestrator.run.side_effect = RunAborted("provider down")
    service = MarketService(repository, orchestrator_factory=lambda: orchestrator)

    outcome = service.trigger_sync("incremental", "v2")

    assert outcome.aborted is True
    assert outcome.summary == {"abort_reason": "provider down"}
