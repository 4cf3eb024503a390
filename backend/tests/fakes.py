"""In-memory chain reader and tuple builders for sync tests."""

from __future__ import annotations

from collections import defaultdict, deque
from typing import Any

from app.domain import ZERO_ADDRESS, ContractVersion, TokenType

NOW = 1_700_000_000
DAY = 24 * 60 * 60

ALICE = "0x" + "a" * 40
BOB = "0x" + "b" * 40
CAROL = "0x" + "d" * 40
CREATOR = "0x" + "c" * 40


def v1_tuple(**overrides: Any) -> list[Any]:
    values: dict[str, Any] = {
        "question": "Will ETH flip BTC?",
        "description": "Legacy market",
        "category": "crypto",
        "image_url": "",
        "yes_total": 0,
        "no_total": 0,
        "deadline": NOW + DAY,
        "resolution_deadline": NOW + 8 * DAY,
        "resolved": False,
        "outcome": False,
        "cancelled": False,
        "created_at": NOW - DAY,
        "creator": CREATOR,
        "verified": True,
        "approved": True,
        "needs_approval": False,
    }
    values.update(overrides)
    return list(values.values())


def v2_tuple(**overrides: Any) -> list[Any]:
    values: dict[str, Any] = {
        "question": "Will SOL trade above 200?",
        "description": "",
        "category": "crypto",
        "image_url": "",
        "yes_total": 0,
        "no_total": 0,
        "swipe_yes_total": 0,
        "swipe_no_total": 0,
        "deadline": NOW + DAY,
        "resolution_deadline": 0,
        "resolved": False,
        "outcome": False,
        "cancelled": False,
        "created_at": NOW - DAY,
        "creator": CREATOR,
        "verified": False,
        "approved": False,
        "needs_approval": False,
        "creation_token": ZERO_ADDRESS,
        "creation_token_amount": 0,
    }
    values.update(overrides)
    return list(values.values())


def empty_v2_tuple() -> list[Any]:
    return v2_tuple(question="", category="", deadline=0, created_at=0, creator=ZERO_ADDRESS)


def stake_tuple(yes: int = 0, no: int = 0, claimed: bool = False) -> list[Any]:
    return [yes, no, claimed]


def stable_position(yes: int = 0, no: int = 0, claimed: bool = False) -> list[Any]:
    return [yes, no, 500_000, 500_000, claimed]


def stable_market(yes: int = 0, no: int = 0, registered: bool = True) -> list[Any]:
    return [registered, CREATOR, NOW + DAY, yes, no, False, False, False, 1]


class FakeChainReader:
    """Dictionary-backed ChainReader with per-call failure injection."""

    def __init__(self) -> None:
        self.counts: dict[ContractVersion, int] = {}
        self.markets: dict[tuple[ContractVersion, int], list[Any]] = {}
        self.participants: dict[tuple[ContractVersion, int], list[str]] = {}
        self.stakes: dict[tuple[ContractVersion, int, str, TokenType], list[Any]] = {}
        self.stable: dict[int, list[Any]] = {}
        self.stable_participants: dict[int, list[str]] = {}
        self.stable_enabled = True
        self.logs: list[dict[str, Any]] = []
        self.block_number = 1_000
        self.calls: list[tuple[str, Any]] = []
        self._failures: dict[tuple[str, Any], deque[Exception]] = defaultdict(deque)
        self._permanent: dict[tuple[str, Any], Exception] = {}

    # -- fixture helpers ------------------------------------------------

    def add_market(
        self,
        version: ContractVersion,
        numeric_id: int,
        raw: list[Any],
        *,
        participants: list[str] | None = None,
        stakes: dict[str, dict[TokenType, list[Any]]] | None = None,
    ) -> None:
        self.markets[(version, numeric_id)] = raw
        self.participants[(version, numeric_id)] = list(participants or [])
        for owner, per_token in (stakes or {}).items():
            for token, value in per_token.items():
                self.stakes[(version, numeric_id, owner, token)] = value
        self.counts[version] = max(self.counts.get(version, 1), numeric_id + 1)

    def set_stake(
        self, version: ContractVersion, numeric_id: int, owner: str, token: TokenType, value: list[Any]
    ) -> None:
        self.stakes[(version, numeric_id, owner, token)] = value

    def fail(self, method: str, key: Any, *errors: Exception) -> None:
        """Raise ``errors`` in order on the next calls of ``method`` for ``key``."""

        self._failures[(method, key)].extend(errors)

    def fail_always(self, method: str, key: Any, error: Exception) -> None:
        self._permanent[(method, key)] = error

    def _check(self, method: str, key: Any) -> None:
        self.calls.append((method, key))
        if (method, key) in self._permanent:
            raise self._permanent[(method, key)]
        queue = self._failures.get((method, key))
        if queue:
            raise queue.popleft()

    # -- ChainReader surface --------------------------------------------

    def read_entity_count(self, version: ContractVersion) -> int:
        self._check("read_entity_count", version)
        return self.counts.get(version, 1)

    def read_market(self, version: ContractVersion, numeric_id: int) -> list[Any]:
        self._check("read_market", numeric_id)
        raw = self.markets.get((version, numeric_id))
        if raw is None:
            return empty_v2_tuple() if version is ContractVersion.V2 else v1_tuple(
                question="", category="", deadline=0, created_at=0, creator=ZERO_ADDRESS
            )
        return raw

    def read_participants(self, version: ContractVersion, numeric_id: int) -> list[str]:
        self._check("read_participants", numeric_id)
        return list(self.participants.get((version, numeric_id), []))

    def read_stake(
        self, version: ContractVersion, numeric_id: int, address: str, token: TokenType
    ) -> list[Any]:
        self._check("read_stake", (numeric_id, address, token))
        value = self.stakes.get((version, numeric_id, address, token))
        if value is not None:
            return value
        return stable_position() if token is TokenType.USDC else stake_tuple()

    def read_stable_market(self, numeric_id: int) -> list[Any] | None:
        self._check("read_stable_market", numeric_id)
        if not self.stable_enabled:
            return None
        return self.stable.get(numeric_id, stable_market(registered=False))

    def read_stable_participants(self, numeric_id: int) -> list[str]:
        self._check("read_stable_participants", numeric_id)
        if not self.stable_enabled:
            return []
        return list(self.stable_participants.get(numeric_id, []))

    def read_event_logs(
        self,
        version: ContractVersion,
        from_block: int,
        to_block: int,
        topics: list[Any] | None = None,
    ) -> list[dict[str, Any]]:
        self._check("read_event_logs", (from_block, to_block))
        return [entry for entry in self.logs if from_block <= entry["blockNumber"] <= to_block]

    def latest_block(self) -> int:
        self._check("latest_block", None)
        return self.block_number
