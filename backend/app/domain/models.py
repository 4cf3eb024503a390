"""Typed domain representations shared by the chain reader, the cache and the sync runs."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

_MARKET_KEY_PATTERN = re.compile(r"^pred_(v[12])_(\d+)$")


class ContractVersion(str, Enum):
    V1 = "v1"
    V2 = "v2"


class TokenType(str, Enum):
    ETH = "ETH"
    SWIPE = "SWIPE"
    USDC = "USDC"


class Outcome(str, Enum):
    UNSET = "unset"
    YES = "yes"
    NO = "no"


class MarketStatus(str, Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"
    PENDING_APPROVAL = "pending_approval"


# Token types each schema version can carry natively; the stable token lives
# on a separate dual-pool contract keyed by V2 ids.
VERSION_TOKEN_TYPES: dict[ContractVersion, tuple[TokenType, ...]] = {
    ContractVersion.V1: (TokenType.ETH,),
    ContractVersion.V2: (TokenType.ETH, TokenType.SWIPE, TokenType.USDC),
}


def market_key(version: ContractVersion, numeric_id: int) -> str:
    return f"pred_{version.value}_{numeric_id}"


def parse_market_key(key: str) -> tuple[ContractVersion, int]:
    """Split a version-tagged id such as ``pred_v2_17`` into its parts."""

    match = _MARKET_KEY_PATTERN.match(key)
    if not match:
        raise ValueError(f"Invalid market key: {key!r}")
    return ContractVersion(match.group(1)), int(match.group(2))


def normalize_address(address: Any) -> str:
    return str(address).strip().lower()


@dataclass(slots=True)
class TokenPool:
    """Aggregate stake on both outcome sides for one token type (raw units)."""

    yes: int = 0
    no: int = 0

    @property
    def total(self) -> int:
        return self.yes + self.no

    def to_dict(self) -> dict[str, int]:
        return {"yes": self.yes, "no": self.no}

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "TokenPool":
        payload = payload or {}
        return cls(yes=int(payload.get("yes", 0)), no=int(payload.get("no", 0)))


@dataclass(slots=True)
class DisplayMetadata:
    """Cache-only presentation fields with no on-chain equivalent."""

    include_chart: bool = False
    selected_crypto: str = ""
    extras: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "include_chart": self.include_chart,
            "selected_crypto": self.selected_crypto,
            "extras": dict(self.extras),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "DisplayMetadata":
        payload = payload or {}
        return cls(
            include_chart=bool(payload.get("include_chart", False)),
            selected_crypto=str(payload.get("selected_crypto") or ""),
            extras=dict(payload.get("extras") or {}),
        )


@dataclass(slots=True)
class MarketRecord:
    """Canonical, schema-version-independent market representation."""

    version: ContractVersion
    numeric_id: int
    question: str
    description: str
    category: str
    image_url: str
    deadline: int
    resolution_deadline: int
    created_at: int
    creator: str
    pools: dict[TokenType, TokenPool] = field(default_factory=dict)
    resolved: bool = False
    outcome: Outcome = Outcome.UNSET
    cancelled: bool = False
    verified: bool = False
    approved: bool = True
    needs_approval: bool = False
    participants: list[str] = field(default_factory=list)
    stable_pool_registered: bool = False
    # The contracts expose no resolver field; the creator stands in for it.
    resolver_hint: str = ""
    resolver_is_approximate: bool = True
    display: DisplayMetadata = field(default_factory=DisplayMetadata)

    @property
    def key(self) -> str:
        return market_key(self.version, self.numeric_id)

    @property
    def total_stakes(self) -> int:
        return len(self.participants)

    def pool(self, token: TokenType) -> TokenPool:
        return self.pools.get(token) or TokenPool()

    @property
    def status(self) -> MarketStatus:
        if self.needs_approval:
            return MarketStatus.PENDING_APPROVAL
        if self.cancelled:
            return MarketStatus.CANCELLED
        if self.resolved:
            return MarketStatus.RESOLVED
        return MarketStatus.ACTIVE

    @property
    def end_date(self) -> str:
        return datetime.fromtimestamp(self.deadline, tz=timezone.utc).strftime("%Y-%m-%d")

    @property
    def end_time(self) -> str:
        return datetime.fromtimestamp(self.deadline, tz=timezone.utc).strftime("%H:%M")

    def is_active_at(self, now: float) -> bool:
        return (
            not self.resolved
            and not self.cancelled
            and not self.needs_approval
            and self.deadline > now
        )

    def with_display(self, display: DisplayMetadata) -> "MarketRecord":
        return replace(self, display=display)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.key,
            "version": self.version.value,
            "numeric_id": self.numeric_id,
            "question": self.question,
            "description": self.description,
            "category": self.category,
            "image_url": self.image_url,
            "deadline": self.deadline,
            "end_date": self.end_date,
            "end_time": self.end_time,
            "resolution_deadline": self.resolution_deadline,
            "created_at": self.created_at,
            "creator": self.creator,
            "pools": {token.value: pool.to_dict() for token, pool in sorted(self.pools.items())},
            "status": self.status.value,
            "resolved": self.resolved,
            "outcome": self.outcome.value,
            "cancelled": self.cancelled,
            "verified": self.verified,
            "approved": self.approved,
            "needs_approval": self.needs_approval,
            "participants": list(self.participants),
            "total_stakes": self.total_stakes,
            "stable_pool_registered": self.stable_pool_registered,
            "resolver_hint": self.resolver_hint,
            "resolver_is_approximate": self.resolver_is_approximate,
            "display": self.display.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "MarketRecord":
        pools = {
            TokenType(token): TokenPool.from_dict(pool)
            for token, pool in (payload.get("pools") or {}).items()
        }
        return cls(
            version=ContractVersion(payload["version"]),
            numeric_id=int(payload["numeric_id"]),
            question=payload.get("question") or "",
            description=payload.get("description") or "",
            category=payload.get("category") or "general",
            image_url=payload.get("image_url") or "",
            deadline=int(payload.get("deadline") or 0),
            resolution_deadline=int(payload.get("resolution_deadline") or 0),
            created_at=int(payload.get("created_at") or 0),
            creator=payload.get("creator") or ZERO_ADDRESS,
            pools=pools,
            resolved=bool(payload.get("resolved", False)),
            outcome=Outcome(payload.get("outcome") or Outcome.UNSET.value),
            cancelled=bool(payload.get("cancelled", False)),
            verified=bool(payload.get("verified", False)),
            approved=bool(payload.get("approved", True)),
            needs_approval=bool(payload.get("needs_approval", False)),
            participants=list(payload.get("participants") or []),
            stable_pool_registered=bool(payload.get("stable_pool_registered", False)),
            resolver_hint=payload.get("resolver_hint") or "",
            resolver_is_approximate=bool(payload.get("resolver_is_approximate", True)),
            display=DisplayMetadata.from_dict(payload.get("display")),
        )


@dataclass(slots=True)
class StakePosition:
    """One participant's position in a market for a single token type."""

    yes_amount: int = 0
    no_amount: int = 0
    claimed: bool = False

    @property
    def total(self) -> int:
        return self.yes_amount + self.no_amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "yes_amount": self.yes_amount,
            "no_amount": self.no_amount,
            "claimed": self.claimed,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> "StakePosition":
        payload = payload or {}
        return cls(
            yes_amount=int(payload.get("yes_amount", 0)),
            no_amount=int(payload.get("no_amount", 0)),
            claimed=bool(payload.get("claimed", False)),
        )


@dataclass(slots=True)
class StakeRecord:
    """A participant's stakes in one market, split by token type."""

    owner: str
    market_key: str
    positions: dict[TokenType, StakePosition] = field(default_factory=dict)

    @property
    def has_stake(self) -> bool:
        return any(position.total > 0 for position in self.positions.values())

    def unclaimed_tokens(self) -> list[TokenType]:
        return sorted(
            token
            for token, position in self.positions.items()
            if position.total > 0 and not position.claimed
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "market_key": self.market_key,
            "positions": {
                token.value: position.to_dict()
                for token, position in sorted(self.positions.items())
            },
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "StakeRecord":
        return cls(
            owner=normalize_address(payload["owner"]),
            market_key=payload["market_key"],
            positions={
                TokenType(token): StakePosition.from_dict(position)
                for token, position in (payload.get("positions") or {}).items()
            },
        )
