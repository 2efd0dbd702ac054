"""
PerpX Exchange Engine

Components:
  - Price Feed (symbol-keyed aggregator wrapper, 8-decimal normalization)
  - Fee Engine (opening, closing, holding fees and profit tax)
  - Risk Calculator (P&L, liquidation price, liquidatability)
  - Position Ledger (balances, positions, markets, liquidation sweep)
  - Event Bus (post-commit ledger events)
"""

from .oracle import (
    PriceFeed,
    PriceQuote,
    PriceSource,
    StaticPriceSource,
)
from .fees import (
    FeeEngine,
    FeeSchedule,
)
from .risk import (
    PositionState,
    RiskCalculator,
)
from .hooks import (
    Deposited,
    EventBus,
    EventFlags,
    HoldingFeeCollected,
    LedgerEvent,
    LiquidationSweep,
    MarketStatusChanged,
    PositionClosed,
    PositionLiquidated,
    PositionOpened,
    Withdrawn,
)
from .perpetual import (
    LedgerLimits,
    Market,
    Position,
    PositionLedger,
    PositionView,
    UserLimits,
)

__all__ = [
    # Oracle
    "PriceFeed",
    "PriceQuote",
    "PriceSource",
    "StaticPriceSource",
    # Fees
    "FeeEngine",
    "FeeSchedule",
    # Risk
    "PositionState",
    "RiskCalculator",
    # Events
    "Deposited",
    "EventBus",
    "EventFlags",
    "HoldingFeeCollected",
    "LedgerEvent",
    "LiquidationSweep",
    "MarketStatusChanged",
    "PositionClosed",
    "PositionLiquidated",
    "PositionOpened",
    "Withdrawn",
    # Ledger
    "LedgerLimits",
    "Market",
    "Position",
    "PositionLedger",
    "PositionView",
    "UserLimits",
]
