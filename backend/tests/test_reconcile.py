from __future__ import annotations

import random

from app.domain import StakePosition, StakeRecord, TokenType
from app.domain.reconcile import merge_stake, reconcile_claims
from fakes import ALICE


def _stake(**positions: StakePosition) -> StakeRecord:
    return StakeRecord(
        owner=ALICE,
        market_key="pred_v2_1",
        positions={TokenType(token): position for token, position in positions.items()},
    )


def test_false_to_true_flips_claim():
    cached = _stake(ETH=StakePosition(10, 0, False))

    result = reconcile_claims(cached, {TokenType.ETH: StakePosition(10, 0, True)})

    assert result.changed
    assert result.flipped == [TokenType.ETH]
    assert result.record.positions[TokenType.ETH].claimed is True
    assert cached.positions[TokenType.ETH].claimed is False


def test_true_to_false_is_ignored_and_reported(caplog):
    cached = _stake(ETH=StakePosition(10, 0, True))

    result = reconcile_claims(cached, {TokenType.ETH: StakePosition(10, 0, False)})

    assert not result.changed
    assert result.record is cached
    assert [anomaly.token for anomaly in result.anomalies] == [TokenType.ETH]


def test_unchanged_input_is_returned_as_is():
    cached = _stake(ETH=StakePosition(1, 2, False), SWIPE=StakePosition(0, 5, True))

    result = reconcile_claims(
        cached,
        {TokenType.ETH: StakePosition(1, 2, False), TokenType.SWIPE: StakePosition(0, 5, True)},
    )

    assert result.record is cached
    assert result.flipped == []
    assert result.anomalies == []


def test_reconcile_never_changes_amounts():
    cached = _stake(ETH=StakePosition(10, 0, False))

    result = reconcile_claims(cached, {TokenType.ETH: StakePosition(999, 999, True)})

    assert result.record.positions[TokenType.ETH] == StakePosition(10, 0, True)


def test_merge_takes_fresh_amounts_and_keeps_claims():
    previous = _stake(ETH=StakePosition(10, 0, True), USDC=StakePosition(0, 3, False))
    fresh = _stake(ETH=StakePosition(12, 1, False))

    result = merge_stake(previous, fresh)

    assert result.record.positions[TokenType.ETH] == StakePosition(12, 1, True)
    assert result.record.positions[TokenType.USDC] == StakePosition(0, 3, False)
    assert len(result.anomalies) == 1


def test_claim_flags_are_monotonic_under_random_drift():
    rng = random.Random(1234)
    tokens = [TokenType.ETH, TokenType.SWIPE, TokenType.USDC]
    record = _stake(**{token.value: StakePosition(5, 5, False) for token in tokens})
    ever_claimed: set[TokenType] = set()

    for _ in range(200):
        chain = {token: StakePosition(5, 5, rng.random() < 0.3) for token in tokens}
        if rng.random() < 0.5:
            result = reconcile_claims(record, chain)
        else:
            result = merge_stake(record, StakeRecord(owner=ALICE, market_key="pred_v2_1", positions=chain))
        for token in tokens:
            if token in ever_claimed:
                assert result.record.positions[token].claimed is True
        ever_claimed |= {token for token in tokens if result.record.positions[token].claimed}
        record = result.record

    assert ever_claimed == set(tokens)
