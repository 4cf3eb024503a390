"""Minimal ABI fragments for the view-calls and events the sync engine uses."""

from __future__ import annotations

from typing import Any

from app.domain import ContractVersion


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[tuple[str, str]]) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": [{"name": arg, "type": kind} for arg, kind in inputs],
        "outputs": [{"name": arg, "type": kind} for arg, kind in outputs],
    }


def _event(name: str, indexed: list[tuple[str, str]]) -> dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": arg, "type": kind, "indexed": True} for arg, kind in indexed],
    }


_ID = [("_predictionId", "uint256")]
_ID_USER = [("", "uint256"), ("", "address")]
_STAKE_OUTPUTS = [("yesAmount", "uint256"), ("noAmount", "uint256"), ("claimed", "bool")]

V1_MARKET_FIELDS: list[tuple[str, str]] = [
    ("question", "string"),
    ("description", "string"),
    ("category", "string"),
    ("imageUrl", "string"),
    ("yesTotalAmount", "uint256"),
    ("noTotalAmount", "uint256"),
    ("deadline", "uint256"),
    ("resolutionDeadline", "uint256"),
    ("resolved", "bool"),
    ("outcome", "bool"),
    ("cancelled", "bool"),
    ("createdAt", "uint256"),
    ("creator", "address"),
    ("verified", "bool"),
    ("approved", "bool"),
    ("needsApproval", "bool"),
]

V2_MARKET_FIELDS: list[tuple[str, str]] = [
    ("question", "string"),
    ("description", "string"),
    ("category", "string"),
    ("imageUrl", "string"),
    ("yesTotalAmount", "uint256"),
    ("noTotalAmount", "uint256"),
    ("swipeYesTotalAmount", "uint256"),
    ("swipeNoTotalAmount", "uint256"),
    ("deadline", "uint256"),
    ("resolutionDeadline", "uint256"),
    ("resolved", "bool"),
    ("outcome", "bool"),
    ("cancelled", "bool"),
    ("createdAt", "uint256"),
    ("creator", "address"),
    ("verified", "bool"),
    ("approved", "bool"),
    ("needsApproval", "bool"),
    ("creationToken", "address"),
    ("creationTokenAmount", "uint256"),
]

STABLE_MARKET_FIELDS: list[tuple[str, str]] = [
    ("registered", "bool"),
    ("creator", "address"),
    ("deadline", "uint256"),
    ("yesPool", "uint256"),
    ("noPool", "uint256"),
    ("resolved", "bool"),
    ("cancelled", "bool"),
    ("outcome", "bool"),
    ("participantCount", "uint256"),
]

STABLE_POSITION_FIELDS: list[tuple[str, str]] = [
    ("yesAmount", "uint256"),
    ("noAmount", "uint256"),
    ("yesEntryPrice", "uint256"),
    ("noEntryPrice", "uint256"),
    ("claimed", "bool"),
]

# Every market event indexes the prediction id as its first topic.
MARKET_EVENTS = [
    _event("PredictionCreated", [("predictionId", "uint256"), ("creator", "address")]),
    _event("StakePlaced", [("predictionId", "uint256"), ("user", "address")]),
    _event("PredictionResolved", [("predictionId", "uint256")]),
    _event("PredictionCancelled", [("predictionId", "uint256")]),
    _event("RewardClaimed", [("predictionId", "uint256"), ("user", "address")]),
    _event("PredictionApproved", [("predictionId", "uint256"), ("approver", "address")]),
]

_COMMON = [
    _fn("nextPredictionId", [], [("", "uint256")]),
    _fn("getParticipants", _ID, [("", "address[]")]),
    _fn("userStakes", _ID_USER, _STAKE_OUTPUTS),
]

V1_ABI: list[dict[str, Any]] = [
    *_COMMON,
    _fn("predictions", [("", "uint256")], V1_MARKET_FIELDS),
    *MARKET_EVENTS,
]

V2_ABI: list[dict[str, Any]] = [
    *_COMMON,
    _fn("predictions", [("", "uint256")], V2_MARKET_FIELDS),
    _fn("userSwipeStakes", _ID_USER, _STAKE_OUTPUTS),
    *MARKET_EVENTS,
]

STABLE_ABI: list[dict[str, Any]] = [
    _fn("getPrediction", [("predictionId", "uint256")], STABLE_MARKET_FIELDS),
    _fn("getPosition", [("predictionId", "uint256"), ("user", "address")], STABLE_POSITION_FIELDS),
    _fn("getParticipants", [("predictionId", "uint256")], [("", "address[]")]),
]

ABI_BY_VERSION: dict[ContractVersion, list[dict[str, Any]]] = {
    ContractVersion.V1: V1_ABI,
    ContractVersion.V2: V2_ABI,
}

__all__ = [
    "ABI_BY_VERSION",
    "MARKET_EVENTS",
    "STABLE_ABI",
    "STABLE_MARKET_FIELDS",
    "STABLE_POSITION_FIELDS",
    "V1_ABI",
    "V1_MARKET_FIELDS",
    "V2_ABI",
    "V2_MARKET_FIELDS",
]
