"""Shared repository query and result types."""

from __future__ import annotations

from dataclasses import dataclass

from app.domain import ContractVersion, MarketStatus


@dataclass(slots=True)
class MarketFilter:
    """Filters and paging for market listings."""

    version: ContractVersion | None = None
    status: MarketStatus | None = None
    category: str | None = None
    creator: str | None = None
    participant: str | None = None
    active_at: float | None = None
    sort: str = "created_at"
    order: str = "desc"
    limit: int = 50
    offset: int = 0


__all__ = ["MarketFilter"]
