"""Read-only access to the prediction market contracts."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from typing import Any, Protocol

import requests
from loguru import logger
from web3 import Web3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError, TimeExhausted

from app.core.config import Settings
from app.domain import VERSION_TOKEN_TYPES, ContractVersion, TokenType
from app.errors import (
    ChainReadError,
    PermanentReadError,
    ProviderTimeout,
    ProviderUnavailable,
    RateLimited,
    Reverted,
    TransientProviderError,
)

from .abi import ABI_BY_VERSION, STABLE_ABI

_RATE_LIMIT_MARKERS = ("rate limit", "too many requests", "429")
_TIMEOUT_MARKERS = ("timed out", "timeout")
_REVERT_MARKERS = ("revert", "invalid opcode")


class ChainReader(Protocol):
    """Pure view-call and log-query surface consumed by the sync engine.

    Every method raises a ``ChainReadError`` subclass on failure.
    """

    def read_entity_count(self, version: ContractVersion) -> int:
        """Return the next unused market id; valid ids are ``1 .. count - 1``."""

    def read_market(self, version: ContractVersion, numeric_id: int) -> Sequence[Any]:
        ...

    def read_participants(self, version: ContractVersion, numeric_id: int) -> list[str]:
        ...

    def read_stake(
        self, version: ContractVersion, numeric_id: int, address: str, token: TokenType
    ) -> Sequence[Any]:
        ...

    def read_stable_market(self, numeric_id: int) -> Sequence[Any] | None:
        """Return the stable-token pool tuple, or ``None`` when stable reads are disabled."""

    def read_stable_participants(self, numeric_id: int) -> list[str]:
        """Return addresses holding a stable-token position; empty when stable reads are disabled."""

    def read_event_logs(
        self,
        version: ContractVersion,
        from_block: int,
        to_block: int,
        topics: list[Any] | None = None,
    ) -> list[dict[str, Any]]:
        ...

    def latest_block(self) -> int:
        ...


def iter_block_ranges(from_block: int, to_block: int, chunk_size: int) -> Iterator[tuple[int, int]]:
    """Yield inclusive ``(start, end)`` ranges no wider than ``chunk_size`` blocks."""

    if chunk_size < 1:
        raise ValueError("chunk_size must be positive")
    start = from_block
    while start <= to_block:
        end = min(start + chunk_size - 1, to_block)
        yield start, end
        start = end + 1


def _status_code(exc: Exception) -> int | None:
    response = getattr(exc, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def classify_provider_error(exc: Exception) -> ChainReadError:
    """Translate a web3/requests exception into the sync error taxonomy."""

    if isinstance(exc, ChainReadError):
        return exc
    message = str(exc)
    lowered = message.lower()

    if isinstance(exc, (ContractLogicError, BadFunctionCallOutput)):
        return Reverted(message)

    status = _status_code(exc)
    if status == 429 or any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return RateLimited(message)
    if isinstance(exc, (requests.exceptions.Timeout, TimeExhausted, TimeoutError)):
        return ProviderTimeout(message)
    if status is not None and status >= 500:
        return TransientProviderError(f"HTTP {status}: {message}")
    if isinstance(exc, (requests.exceptions.ConnectionError, ConnectionError)):
        return ProviderUnavailable(message)
    if any(marker in lowered for marker in _TIMEOUT_MARKERS):
        return ProviderTimeout(message)
    if any(marker in lowered for marker in _REVERT_MARKERS):
        return Reverted(message)
    return PermanentReadError(f"{exc.__class__.__name__}: {message}")


@contextmanager
def _translated(operation: str) -> Iterator[None]:
    try:
        yield
    except ChainReadError:
        raise
    except Exception as exc:  # noqa: BLE001
        translated = classify_provider_error(exc)
        logger.debug("Chain call {} raised {} -> {}", operation, exc.__class__.__name__, translated.__class__.__name__)
        raise translated from exc


def market_ids_from_logs(logs: Sequence[Any]) -> list[int]:
    """Extract the distinct market ids indexed as the first topic of each log."""

    ids: set[int] = set()
    for entry in logs:
        topics = entry.get("topics") if isinstance(entry, dict) else getattr(entry, "topics", None)
        if not topics or len(topics) < 2:
            continue
        topic = topics[1]
        if isinstance(topic, (bytes, bytearray)):
            ids.add(int.from_bytes(topic, "big"))
        elif isinstance(topic, str):
            ids.add(int(topic, 16))
        elif isinstance(topic, int):
            ids.add(topic)
    ids.discard(0)
    return sorted(ids)


class Web3ChainReader:
    """ChainReader backed by a web3 HTTP provider."""

    def __init__(
        self,
        *,
        rpc_url: str,
        addresses: dict[ContractVersion, str],
        stable_address: str | None = None,
        timeout: float = 10.0,
        log_chunk_size: int = 1000,
        web3: Web3 | None = None,
    ) -> None:
        self._w3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self._log_chunk_size = log_chunk_size
        self._addresses = {
            version: Web3.to_checksum_address(address) for version, address in addresses.items()
        }
        self._contracts = {
            version: self._w3.eth.contract(address=address, abi=ABI_BY_VERSION[version])
            for version, address in self._addresses.items()
        }
        self._stable = (
            self._w3.eth.contract(address=Web3.to_checksum_address(stable_address), abi=STABLE_ABI)
            if stable_address
            else None
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Web3ChainReader":
        return cls(
            rpc_url=str(settings.rpc_url),
            addresses={
                ContractVersion.V1: settings.v1_contract_address,
                ContractVersion.V2: settings.v2_contract_address,
            },
            stable_address=settings.usdc_contract_address,
            timeout=settings.rpc_timeout_seconds,
            log_chunk_size=settings.log_chunk_size,
        )

    def _contract(self, version: ContractVersion) -> Any:
        try:
            return self._contracts[version]
        except KeyError as exc:
            raise PermanentReadError(f"No contract configured for {version.value}") from exc

    def read_entity_count(self, version: ContractVersion) -> int:
        with _translated(f"{version.value}.nextPredictionId"):
            return int(self._contract(version).functions.nextPredictionId().call())

    def read_market(self, version: ContractVersion, numeric_id: int) -> Sequence[Any]:
        with _translated(f"{version.value}.predictions({numeric_id})"):
            return self._contract(version).functions.predictions(numeric_id).call()

    def read_participants(self, version: ContractVersion, numeric_id: int) -> list[str]:
        with _translated(f"{version.value}.getParticipants({numeric_id})"):
            return list(self._contract(version).functions.getParticipants(numeric_id).call())

    def read_stake(
        self, version: ContractVersion, numeric_id: int, address: str, token: TokenType
    ) -> Sequence[Any]:
        if token not in VERSION_TOKEN_TYPES[version]:
            raise ValueError(f"{token.value} stakes do not exist on {version.value}")
        owner = Web3.to_checksum_address(address)
        operation = f"{version.value}.stake({numeric_id}, {address}, {token.value})"
        with _translated(operation):
            if token is TokenType.USDC:
                if self._stable is None:
                    raise PermanentReadError("Stable-token reads are disabled")
                return self._stable.functions.getPosition(numeric_id, owner).call()
            functions = self._contract(version).functions
            if token is TokenType.SWIPE:
                return functions.userSwipeStakes(numeric_id, owner).call()
            return functions.userStakes(numeric_id, owner).call()

    def read_stable_market(self, numeric_id: int) -> Sequence[Any] | None:
        if self._stable is None:
            return None
        with _translated(f"stable.getPrediction({numeric_id})"):
            return self._stable.functions.getPrediction(numeric_id).call()

    def read_stable_participants(self, numeric_id: int) -> list[str]:
        if self._stable is None:
            return []
        with _translated(f"stable.getParticipants({numeric_id})"):
            return list(self._stable.functions.getParticipants(numeric_id).call())

    def read_event_logs(
        self,
        version: ContractVersion,
        from_block: int,
        to_block: int,
        topics: list[Any] | None = None,
    ) -> list[dict[str, Any]]:
        if from_block > to_block:
            return []
        address = self._addresses.get(version)
        if address is None:
            raise PermanentReadError(f"No contract configured for {version.value}")

        logs: list[dict[str, Any]] = []
        for start, end in iter_block_ranges(from_block, to_block, self._log_chunk_size):
            params: dict[str, Any] = {"address": address, "fromBlock": start, "toBlock": end}
            if topics:
                params["topics"] = topics
            with _translated(f"{version.value}.get_logs({start}-{end})"):
                chunk = self._w3.eth.get_logs(params)
            logs.extend(dict(entry) for entry in chunk)
        return logs

    def latest_block(self) -> int:
        with _translated("eth.block_number"):
            return int(self._w3.eth.block_number)


__all__ = [
    "ChainReader",
    "Web3ChainReader",
    "classify_provider_error",
    "iter_block_ranges",
    "market_ids_from_logs",
]
