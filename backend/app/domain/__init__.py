"""Domain models representing canonical market and stake records."""

from .models import (
    VERSION_TOKEN_TYPES,
    ZERO_ADDRESS,
    ContractVersion,
    DisplayMetadata,
    MarketRecord,
    MarketStatus,
    Outcome,
    StakePosition,
    StakeRecord,
    TokenPool,
    TokenType,
    market_key,
    normalize_address,
    parse_market_key,
)

__all__ = [
    "VERSION_TOKEN_TYPES",
    "ZERO_ADDRESS",
    "ContractVersion",
    "DisplayMetadata",
    "MarketRecord",
    "MarketStatus",
    "Outcome",
    "StakePosition",
    "StakeRecord",
    "TokenPool",
    "TokenType",
    "market_key",
    "normalize_address",
    "parse_market_key",
]
