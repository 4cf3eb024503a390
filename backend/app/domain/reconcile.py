"""Claim-flag reconciliation between cached stake records and fresh chain reads.

``claimed`` only ever moves from false to true. Both helpers here are pure:
they never touch the cache and return the input object untouched when nothing
needs to change.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field

from loguru import logger

from .models import StakePosition, StakeRecord, TokenType


@dataclass(slots=True, frozen=True)
class ClaimAnomaly:
    """Chain reported ``claimed=false`` for a position cached as claimed."""

    owner: str
    market_key: str
    token: TokenType

    def to_dict(self) -> dict[str, str]:
        return {"owner": self.owner, "market_key": self.market_key, "token": self.token.value}


@dataclass(slots=True)
class ReconcileResult:
    record: StakeRecord
    flipped: list[TokenType] = field(default_factory=list)
    anomalies: list[ClaimAnomaly] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.flipped)


def _log_anomaly(anomaly: ClaimAnomaly) -> None:
    logger.warning(
        "Claim anomaly: owner={} market={} token={} cached claimed=true but chain reports false; keeping cached value",
        anomaly.owner,
        anomaly.market_key,
        anomaly.token.value,
    )


def reconcile_claims(
    cached: StakeRecord, chain_positions: Mapping[TokenType, StakePosition]
) -> ReconcileResult:
    """Flip cached claim flags that the chain reports as claimed.

    Only tokens present in both ``cached`` and ``chain_positions`` are compared.
    Amounts are never touched here.
    """

    flipped: list[TokenType] = []
    anomalies: list[ClaimAnomaly] = []
    for token in sorted(cached.positions):
        chain_position = chain_positions.get(token)
        if chain_position is None:
            continue
        cached_claimed = cached.positions[token].claimed
        if not cached_claimed and chain_position.claimed:
            flipped.append(token)
        elif cached_claimed and not chain_position.claimed:
            anomaly = ClaimAnomaly(owner=cached.owner, market_key=cached.market_key, token=token)
            _log_anomaly(anomaly)
            anomalies.append(anomaly)

    if not flipped:
        return ReconcileResult(record=cached, anomalies=anomalies)

    positions = dict(cached.positions)
    for token in flipped:
        current = positions[token]
        positions[token] = StakePosition(
            yes_amount=current.yes_amount, no_amount=current.no_amount, claimed=True
        )
    updated = StakeRecord(owner=cached.owner, market_key=cached.market_key, positions=positions)
    return ReconcileResult(record=updated, flipped=flipped, anomalies=anomalies)


def merge_stake(previous: StakeRecord | None, fresh: StakeRecord) -> ReconcileResult:
    """Combine a fresh chain stake read with the stored record.

    Amounts come from ``fresh``; a position stored as claimed stays claimed even
    if the fresh read says otherwise. Positions missing from ``fresh`` are kept.
    ``flipped`` lists tokens whose claim flag became true with this write.
    """

    if previous is None:
        flipped = sorted(token for token, position in fresh.positions.items() if position.claimed)
        return ReconcileResult(record=fresh, flipped=flipped)

    positions = dict(previous.positions)
    flipped: list[TokenType] = []
    anomalies: list[ClaimAnomaly] = []
    for token, position in fresh.positions.items():
        stored = previous.positions.get(token)
        claimed = position.claimed
        if stored is not None and stored.claimed and not position.claimed:
            anomaly = ClaimAnomaly(owner=fresh.owner, market_key=fresh.market_key, token=token)
            _log_anomaly(anomaly)
            anomalies.append(anomaly)
            claimed = True
        elif position.claimed and (stored is None or not stored.claimed):
            flipped.append(token)
        positions[token] = StakePosition(
            yes_amount=position.yes_amount, no_amount=position.no_amount, claimed=claimed
        )

    merged = StakeRecord(owner=fresh.owner, market_key=fresh.market_key, positions=positions)
    return ReconcileResult(record=merged, flipped=sorted(flipped), anomalies=anomalies)


__all__ = ["ClaimAnomaly", "ReconcileResult", "merge_stake", "reconcile_claims"]
