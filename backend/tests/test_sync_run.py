from __future__ import annotations

import json

import pytest

from app.domain import ContractVersion, StakePosition, StakeRecord, TokenType
from app.errors import ProviderUnavailable
from chain.normalize import canonicalize_market
from fakes import ALICE, v2_tuple
from pipelines import sync_run
from scripts import purge_market


def _factory(orchestrator):
    def build(_settings):
        return orchestrator

    return build


def test_targeted_run_prints_summary_and_writes_file(chain, orchestrator, test_settings, tmp_path, capsys):
    chain.add_market(ContractVersion.V2, 2, v2_tuple())
    summary_path = tmp_path / "out" / "summary.json"
    args = sync_run._parse_args(["targeted", "--id", "2", "--summary-path", str(summary_path)])

    exit_code = sync_run.run_sync(args, test_settings, orchestrator_factory=_factory(orchestrator))

    assert exit_code == 0
    printed = json.loads(capsys.readouterr().out)
    assert printed["strategy"] == "targeted"
    assert printed["synced"] == 1
    assert json.loads(summary_path.read_text(encoding="utf-8")) == printed


def test_aborted_run_exits_non_zero(chain, orchestrator, test_settings, capsys):
    chain.fail_always("read_entity_count", ContractVersion.V2, ProviderUnavailable("connection refused"))
    args = sync_run._parse_args(["incremental"])

    exit_code = sync_run.run_sync(args, test_settings, orchestrator_factory=_factory(orchestrator))

    assert exit_code == 1
    printed = json.loads(capsys.readouterr().out)
    assert printed["aborted"] is True
    assert printed["cursor_before"] == 0


def test_strategy_params_are_mapped_from_flags():
    assert sync_run._strategy_params(sync_run._parse_args(["recent", "--count", "3"])) == {"count": 3}
    assert sync_run._strategy_params(sync_run._parse_args(["resolved", "--limit", "4"])) == {"limit": 4}
    assert sync_run._strategy_params(sync_run._parse_args(["logs", "--from-block", "10"])) == {
        "from_block": 10,
        "to_block": None,
    }
    assert sync_run._strategy_params(sync_run._parse_args(["full", "--version", "v1"])) == {}

    with pytest.raises(SystemExit):
        sync_run._strategy_params(sync_run._parse_args(["targeted"]))
    with pytest.raises(SystemExit):
        sync_run._parse_args(["everything"])


@pytest.fixture
def purge_env(monkeypatch, session_factory, test_settings):
    monkeypatch.setattr(purge_market, "get_settings", lambda: test_settings)
    monkeypatch.setattr(purge_market, "SessionLocal", session_factory)
    monkeypatch.setattr(purge_market, "init_db", lambda: None)
    monkeypatch.setattr(purge_market, "configure_logging", lambda _level: None)


def test_purge_script_removes_market_and_stakes(purge_env, repository, store):
    repository.save_market(canonicalize_market(ContractVersion.V2, 4, v2_tuple()))
    repository.save_stake(StakeRecord(ALICE, "pred_v2_4", {TokenType.ETH: StakePosition(1, 0)}))
    store.set("stats:compact", {"total_markets": 1})

    assert purge_market.main(["pred_v2_4", "--dry-run"]) == 0
    assert repository.get_market("pred_v2_4") is not None

    assert purge_market.main(["4", "--version", "v2"]) == 0
    assert repository.get_market("pred_v2_4") is None
    assert repository.stakes_for_market("pred_v2_4") == []
    assert store.get("stats:compact") is None

    assert purge_market.main(["pred_v2_4"]) == 1
    with pytest.raises(SystemExit):
        purge_market.main(["4"])
