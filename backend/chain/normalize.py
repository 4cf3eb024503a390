"""Per-version tuple parsers converging on the canonical MarketRecord."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from app.domain import (
    ZERO_ADDRESS,
    ContractVersion,
    DisplayMetadata,
    MarketRecord,
    Outcome,
    StakePosition,
    TokenPool,
    TokenType,
    market_key,
    normalize_address,
)
from app.errors import DataShapeError, InvalidRecord, NotFound

from .abi import (
    STABLE_MARKET_FIELDS,
    STABLE_POSITION_FIELDS,
    V1_MARKET_FIELDS,
    V2_MARKET_FIELDS,
)

_CHART_HOST = "geckoterminal.com"
_CHART_POOL_MARKER = "/pools/"


def _coerce(raw: Any, kind: str, *, field_name: str, context: str) -> Any:
    """Validate one tuple slot against its ABI type; never coerce silently."""

    if kind == "bool":
        if isinstance(raw, bool):
            return raw
    elif kind.startswith("uint"):
        if isinstance(raw, int) and not isinstance(raw, bool) and raw >= 0:
            return raw
    elif kind == "address":
        if isinstance(raw, str) and raw.startswith("0x") and len(raw) == 42:
            return normalize_address(raw)
    elif kind == "string":
        if isinstance(raw, str):
            return raw
    raise DataShapeError(
        f"{context}: field {field_name!r} expected {kind}, got {type(raw).__name__} {raw!r}"
    )


def _parse_fields(raw: Any, fields: list[tuple[str, str]], *, context: str) -> dict[str, Any]:
    if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)):
        raise DataShapeError(f"{context}: expected a tuple, got {type(raw).__name__}")
    if len(raw) != len(fields):
        raise DataShapeError(f"{context}: expected {len(fields)} fields, got {len(raw)}")
    return {
        name: _coerce(value, kind, field_name=name, context=context)
        for (name, kind), value in zip(fields, raw)
    }


@dataclass(slots=True, frozen=True)
class V1MarketTuple:
    question: str
    description: str
    category: str
    image_url: str
    yes_total: int
    no_total: int
    deadline: int
    resolution_deadline: int
    resolved: bool
    outcome: bool
    cancelled: bool
    created_at: int
    creator: str
    verified: bool
    approved: bool
    needs_approval: bool


@dataclass(slots=True, frozen=True)
class V2MarketTuple:
    question: str
    description: str
    category: str
    image_url: str
    yes_total: int
    no_total: int
    swipe_yes_total: int
    swipe_no_total: int
    deadline: int
    resolution_deadline: int
    resolved: bool
    outcome: bool
    cancelled: bool
    created_at: int
    creator: str
    verified: bool
    approved: bool
    needs_approval: bool
    creation_token: str
    creation_token_amount: int


@dataclass(slots=True, frozen=True)
class StableMarketTuple:
    registered: bool
    creator: str
    deadline: int
    yes_pool: int
    no_pool: int
    resolved: bool
    cancelled: bool
    outcome: bool
    participant_count: int


MarketTuple = V1MarketTuple | V2MarketTuple


def parse_market_tuple(version: ContractVersion, raw: Any) -> MarketTuple:
    context = f"{version.value} market tuple"
    if version is ContractVersion.V1:
        values = _parse_fields(raw, V1_MARKET_FIELDS, context=context)
        return V1MarketTuple(
            question=values["question"],
            description=values["description"],
            category=values["category"],
            image_url=values["imageUrl"],
            yes_total=values["yesTotalAmount"],
            no_total=values["noTotalAmount"],
            deadline=values["deadline"],
            resolution_deadline=values["resolutionDeadline"],
            resolved=values["resolved"],
            outcome=values["outcome"],
            cancelled=values["cancelled"],
            created_at=values["createdAt"],
            creator=values["creator"],
            verified=values["verified"],
            approved=values["approved"],
            needs_approval=values["needsApproval"],
        )
    if version is ContractVersion.V2:
        values = _parse_fields(raw, V2_MARKET_FIELDS, context=context)
        return V2MarketTuple(
            question=values["question"],
            description=values["description"],
            category=values["category"],
            image_url=values["imageUrl"],
            yes_total=values["yesTotalAmount"],
            no_total=values["noTotalAmount"],
            swipe_yes_total=values["swipeYesTotalAmount"],
            swipe_no_total=values["swipeNoTotalAmount"],
            deadline=values["deadline"],
            resolution_deadline=values["resolutionDeadline"],
            resolved=values["resolved"],
            outcome=values["outcome"],
            cancelled=values["cancelled"],
            created_at=values["createdAt"],
            creator=values["creator"],
            verified=values["verified"],
            approved=values["approved"],
            needs_approval=values["needsApproval"],
            creation_token=values["creationToken"],
            creation_token_amount=values["creationTokenAmount"],
        )
    raise DataShapeError(f"Unrecognized contract version: {version!r}")


def parse_stable_market(raw: Any) -> StableMarketTuple | None:
    if raw is None:
        return None
    values = _parse_fields(raw, STABLE_MARKET_FIELDS, context="stable market tuple")
    return StableMarketTuple(
        registered=values["registered"],
        creator=values["creator"],
        deadline=values["deadline"],
        yes_pool=values["yesPool"],
        no_pool=values["noPool"],
        resolved=values["resolved"],
        cancelled=values["cancelled"],
        outcome=values["outcome"],
        participant_count=values["participantCount"],
    )


_STAKE_FIELDS = [("yesAmount", "uint256"), ("noAmount", "uint256"), ("claimed", "bool")]


def parse_stake_tuple(token: TokenType, raw: Any) -> StakePosition:
    """Map a per-token stake tuple to a StakePosition.

    ETH and SWIPE stakes are ``(yes, no, claimed)``; stable-token positions also
    carry entry prices which are not cached.
    """

    fields = STABLE_POSITION_FIELDS if token is TokenType.USDC else _STAKE_FIELDS
    values = _parse_fields(raw, fields, context=f"{token.value} stake tuple")
    return StakePosition(
        yes_amount=values["yesAmount"],
        no_amount=values["noAmount"],
        claimed=values["claimed"],
    )


def detect_display(image_url: str) -> DisplayMetadata:
    """Chart settings implied by a chart-pool image URL; the pool address is the segment after ``/pools/``."""

    image_url = image_url or ""
    if _CHART_HOST not in image_url:
        return DisplayMetadata()
    _, marker, tail = image_url.partition(_CHART_POOL_MARKER)
    pool = tail.split("?", 1)[0] if marker else ""
    return DisplayMetadata(include_chart=True, selected_crypto=pool)


def validate_market_tuple(version: ContractVersion, numeric_id: int, raw: Any) -> MarketTuple:
    """Parse ``raw`` and reject ids that were never written or carry a zero deadline."""

    parsed = parse_market_tuple(version, raw)
    key = market_key(version, numeric_id)
    if parsed.creator == ZERO_ADDRESS and parsed.created_at == 0:
        raise NotFound(f"{key} does not exist on chain")
    if parsed.deadline <= 0:
        raise InvalidRecord(f"{key} has invalid deadline {parsed.deadline}")
    return parsed


def _outcome(resolved: bool, outcome: bool) -> Outcome:
    if not resolved:
        return Outcome.UNSET
    return Outcome.YES if outcome else Outcome.NO


def _participants(chain: Iterable[str], extra: Iterable[str]) -> list[str]:
    merged = {normalize_address(address) for address in chain if address}
    merged.update(normalize_address(address) for address in extra if address)
    merged.discard(ZERO_ADDRESS)
    return sorted(merged)


def canonicalize_market(
    version: ContractVersion,
    numeric_id: int,
    raw: Any,
    *,
    participants: Iterable[str] = (),
    stakers: Iterable[str] = (),
    stable: StableMarketTuple | None = None,
    previous: MarketRecord | None = None,
    resolution_grace: int = 7 * 24 * 60 * 60,
) -> MarketRecord:
    """Build the canonical record for one chain read.

    Chain fields always come from ``raw``; cache-only display metadata is taken
    from ``previous`` when it exists. ``stakers`` are addresses known to hold a
    nonzero stake, folded into the participant set.

    Raises NotFound for ids the contract has never written and InvalidRecord
    for records with a zero deadline.
    """

    parsed = validate_market_tuple(version, numeric_id, raw)

    pools = {TokenType.ETH: TokenPool(yes=parsed.yes_total, no=parsed.no_total)}
    approved = parsed.approved
    resolution_deadline = parsed.resolution_deadline
    if isinstance(parsed, V2MarketTuple):
        pools[TokenType.SWIPE] = TokenPool(yes=parsed.swipe_yes_total, no=parsed.swipe_no_total)
        # Markets on the current schema are auto-approved.
        approved = True
        if resolution_deadline <= 0:
            resolution_deadline = parsed.deadline + resolution_grace

    stable_registered = bool(stable and stable.registered)
    if stable_registered:
        pools[TokenType.USDC] = TokenPool(yes=stable.yes_pool, no=stable.no_pool)

    detected = detect_display(parsed.image_url)
    if previous is not None:
        # Cached values win field by field; detection only fills what is unset.
        cached = previous.display
        display = DisplayMetadata(
            include_chart=cached.include_chart or detected.include_chart,
            selected_crypto=cached.selected_crypto or detected.selected_crypto,
            extras=dict(cached.extras),
        )
    else:
        display = detected

    return MarketRecord(
        version=version,
        numeric_id=numeric_id,
        question=parsed.question,
        description=parsed.description,
        category=parsed.category or "general",
        image_url=parsed.image_url,
        deadline=parsed.deadline,
        resolution_deadline=resolution_deadline,
        created_at=parsed.created_at,
        creator=parsed.creator,
        pools=pools,
        resolved=parsed.resolved,
        outcome=_outcome(parsed.resolved, parsed.outcome),
        cancelled=parsed.cancelled,
        verified=parsed.verified,
        approved=approved,
        needs_approval=parsed.needs_approval,
        participants=_participants(participants, stakers),
        stable_pool_registered=stable_registered,
        resolver_hint=parsed.creator,
        resolver_is_approximate=True,
        display=display,
    )


__all__ = [
    "MarketTuple",
    "StableMarketTuple",
    "V1MarketTuple",
    "V2MarketTuple",
    "canonicalize_market",
    "detect_display",
    "parse_market_tuple",
    "parse_stable_market",
    "parse_stake_tuple",
    "validate_market_tuple",
]
