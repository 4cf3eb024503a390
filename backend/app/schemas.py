from typing import Any

from pydantic import BaseModel, Field, field_validator


class TokenPool(BaseModel):
    yes: int = 0
    no: int = 0


class DisplayMetadata(BaseModel):
    include_chart: bool = False
    selected_crypto: str = ""
    extras: dict[str, Any] = Field(default_factory=dict)


class Market(BaseModel):
    id: str
    version: str
    numeric_id: int
    question: str
    description: str = ""
    category: str
    image_url: str = ""
    deadline: int
    end_date: str
    end_time: str
    resolution_deadline: int
    created_at: int
    creator: str
    pools: dict[str, TokenPool] = Field(default_factory=dict)
    resolved: bool
    outcome: str
    cancelled: bool
    verified: bool
    approved: bool
    needs_approval: bool
    participants: list[str] = Field(default_factory=list)
    status: str
    total_stakes: int
    stable_pool_registered: bool = False
    resolver_hint: str = ""
    resolver_is_approximate: bool = True
    display: DisplayMetadata = Field(default_factory=DisplayMetadata)


class MarketList(BaseModel):
    total: int
    items: list[Market]


class StakePosition(BaseModel):
    yes_amount: int = 0
    no_amount: int = 0
    claimed: bool = False


class Stake(BaseModel):
    owner: str
    market_key: str
    positions: dict[str, StakePosition] = Field(default_factory=dict)


class StakeList(BaseModel):
    total: int
    items: list[Stake]


class CategoryStats(BaseModel):
    category: str
    total: int
    active: int


class MarketStats(BaseModel):
    total_markets: int
    active_markets: int
    resolved_markets: int
    cancelled_markets: int
    pending_markets: int
    volume_by_token: dict[str, int]
    unique_participants: int
    top_category: str | None = None
    resolution_rate: float
    ending_within_24h: int
    created_last_7d: int
    categories: list[CategoryStats] = Field(default_factory=list)
    generated_at: float


class SyncRequest(BaseModel):
    version: str = "v2"
    id: int | None = Field(default=None, ge=1, description="Market id for targeted syncs")
    count: int | None = Field(default=None, ge=1, description="Window size for recent syncs")
    limit: int | None = Field(default=None, ge=1, description="Cap for resolved syncs")
    from_block: int | None = Field(default=None, ge=0)
    to_block: int | None = Field(default=None, ge=0)

    @field_validator("version")
    @classmethod
    def _normalize_version(cls, value: str) -> str:
        candidate = value.strip().lower()
        if candidate not in {"v1", "v2"}:
            raise ValueError("version must be v1 or v2")
        return candidate


class IdFailure(BaseModel):
    id: int
    error: str
    message: str


class ClaimAnomaly(BaseModel):
    owner: str
    market_key: str
    token: str


class SyncSummary(BaseModel):
    run_id: str | None = None
    strategy: str | None = None
    version: str | None = None
    started_at: float | None = None
    finished_at: float | None = None
    requested: int = 0
    synced: int = 0
    errors: int = 0
    stakes_written: int = 0
    claims_updated: int = 0
    skipped: list[IdFailure] = Field(default_factory=list)
    failures: list[IdFailure] = Field(default_factory=list)
    flagged: list[IdFailure] = Field(default_factory=list)
    locked: list[int] = Field(default_factory=list)
    anomalies: list[ClaimAnomaly] = Field(default_factory=list)
    cursor_before: int | None = None
    cursor_after: int | None = None
    aborted: bool = False
    abort_reason: str | None = None
    cancelled: bool = False
