"""
PerpX Risk Calculator

Derives risk figures from a position snapshot, its market and a live price:
  - Unrealized P&L (signed, truncated toward zero)
  - Liquidation trigger price
  - Current collateral value and margin ratio
  - Liquidatability

Nothing here is stored. A position's health is a pure function of the
current price and elapsed time and is recomputed on every query.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from ..constants import BPS_DENOMINATOR, div_trunc
from ..exceptions import InvalidPriceError
from .fees import FeeEngine

if TYPE_CHECKING:
    from .perpetual import Market, Position


class PositionState(str, Enum):
    NOT_OPEN = "not_open"
    HEALTHY = "healthy"
    LIQUIDATABLE = "liquidatable"
    CLOSED = "closed"


class RiskCalculator:
    """Pure risk math; reads fee accrual through the injected FeeEngine."""

    def __init__(self, fee_engine: FeeEngine):
        self.fees = fee_engine

    def pnl(self, position: "Position", current_price: int) -> int:
        """
        Unrealized P&L in 6-decimal USD.

        long:  (current - entry) * size / entry
        short: the negation
        """
        if current_price <= 0 or position.entry_price <= 0:
            raise InvalidPriceError("Prices must be positive")
        raw = div_trunc((current_price - position.entry_price) * position.size, position.entry_price)
        return raw if position.is_long else -raw

    def maintenance_requirement(self, position: "Position", market: "Market") -> int:
        return position.collateral * market.maintenance_margin_bps // BPS_DENOMINATOR

    def current_value(self, position: "Position", current_price: int, now: int) -> int:
        """collateral + pnl - accrued holding fee"""
        return (
            position.collateral
            + self.pnl(position, current_price)
            - self.fees.holding_fee(position, now)
        )

    def liquidation_price(self, position: "Position", market: "Market", now: int) -> int:
        """
        Price at which the collateral left above maintenance margin and
        accrued holding fees is exhausted.

        Returns the entry price when fees and margin already consume the
        collateral (liquidatable at any price).
        """
        cushion = (
            position.collateral
            - self.maintenance_requirement(position, market)
            - self.fees.holding_fee(position, now)
        )
        if cushion <= 0 or position.size <= 0:
            return position.entry_price

        move = position.entry_price * cushion // position.size
        if position.is_long:
            return max(position.entry_price - move, 0)
        return position.entry_price + move

    def can_liquidate(self, position: "Position", market: "Market", current_price: int, now: int) -> bool:
        if not position.is_open:
            return False
        value = self.current_value(position, current_price, now)
        return value <= self.maintenance_requirement(position, market)

    def margin_ratio(self, position: "Position", current_price: int, now: int) -> int:
        """Current value / notional, in basis points; 0 when underwater."""
        value = self.current_value(position, current_price, now)
        if value <= 0 or position.size <= 0:
            return 0
        return value * BPS_DENOMINATOR // position.size

    def health(self, position: "Position", market: "Market", current_price: int, now: int) -> PositionState:
        if not position.is_open:
            return PositionState.CLOSED if position.open_time else PositionState.NOT_OPEN
        if self.can_liquidate(position, market, current_price, now):
            return PositionState.LIQUIDATABLE
        return PositionState.HEALTHY
