"""
PerpX Fee Engine

Pure fee arithmetic over position snapshots:
  - Opening fee: bps of collateral
  - Closing fee: bps of collateral
  - Holding fee: bps of collateral per whole elapsed period (no proration)
  - Profit tax: percentage of positive realized P&L

All amounts are 6-decimal integers; every division truncates.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..constants import (
    BPS_DENOMINATOR,
    CLOSING_FEE_BPS,
    HOLDING_FEE_BPS_PER_PERIOD,
    HOLDING_FEE_PERIOD,
    OPENING_FEE_BPS,
    PCT_DENOMINATOR,
    PROFIT_TAX_PCT,
)

if TYPE_CHECKING:
    from .perpetual import Position


@dataclass(frozen=True)
class FeeSchedule:
    """Fee policy. The defaults are the protocol's fixed rates."""
    opening_fee_bps: int = OPENING_FEE_BPS
    closing_fee_bps: int = CLOSING_FEE_BPS
    holding_fee_bps: int = HOLDING_FEE_BPS_PER_PERIOD
    holding_period: int = HOLDING_FEE_PERIOD
    profit_tax_pct: int = PROFIT_TAX_PCT

    def __post_init__(self):
        if self.holding_period <= 0:
            raise ValueError("holding_period must be positive")
        for name in ("opening_fee_bps", "closing_fee_bps", "holding_fee_bps"):
            if not 0 <= getattr(self, name) <= BPS_DENOMINATOR:
                raise ValueError(f"{name} must be within [0, {BPS_DENOMINATOR}]")
        if not 0 <= self.profit_tax_pct <= PCT_DENOMINATOR:
            raise ValueError(f"profit_tax_pct must be within [0, {PCT_DENOMINATOR}]")


class FeeEngine:
    """Stateless fee calculator. Never mutates the positions it reads."""

    def __init__(self, schedule: FeeSchedule = FeeSchedule()):
        self.schedule = schedule

    def opening_fee(self, collateral: int) -> int:
        return collateral * self.schedule.opening_fee_bps // BPS_DENOMINATOR

    def closing_fee(self, collateral: int) -> int:
        return collateral * self.schedule.closing_fee_bps // BPS_DENOMINATOR

    def holding_periods(self, position: "Position", now: int) -> int:
        """Whole fee periods elapsed since the position's high-water mark."""
        if not position.is_open or now <= position.last_fee_time:
            return 0
        return (now - position.last_fee_time) // self.schedule.holding_period

    def holding_fee(self, position: "Position", now: int) -> int:
        periods = self.holding_periods(position, now)
        if periods == 0:
            return 0
        return position.collateral * self.schedule.holding_fee_bps * periods // BPS_DENOMINATOR

    def profit_tax(self, profit: int) -> int:
        if profit <= 0:
            return 0
        return profit * self.schedule.profit_tax_pct // PCT_DENOMINATOR

    def total_fees(self, position: "Position", now: int) -> int:
        """Opening + closing + accrued holding fee for a position's collateral."""
        return (
            self.opening_fee(position.collateral)
            + self.closing_fee(position.collateral)
            + self.holding_fee(position, now)
        )

    def advance_fee_time(self, position: "Position", now: int) -> int:
        """New fee high-water mark after charging every whole elapsed period."""
        periods = self.holding_periods(position, now)
        return position.last_fee_time + periods * self.schedule.holding_period
