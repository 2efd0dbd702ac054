"""
PerpX Liquidation Triggers

Keeper-style entry points that run the ledger's liquidation sweep:
  - IntervalLiquidationTrigger: at most once per interval (default 6h)
  - EventLiquidationTrigger: after position opens / closes, rate limited
  - ManualLiquidationTrigger: forced sweep by the owner

Periodic triggers fail fast with UpkeepNotNeededError when called early.
"""

import time
from typing import Callable, Optional, Tuple

from ..constants import LIQUIDATION_EVENT_COOLDOWN, LIQUIDATION_INTERVAL_SECONDS
from ..crypto.hashing import contract_address, normalize_address
from ..exceptions import AuthorizationError, UpkeepNotNeededError
from ..exchange.hooks import EventFlags, LedgerEvent, PositionClosed, PositionOpened
from ..exchange.perpetual import PositionLedger
from ..logger import get_logger

logger = get_logger(__name__)


class _LiquidationTrigger:
    """Shared sweep bookkeeping."""

    label = "trigger"

    def __init__(self, ledger: PositionLedger, clock: Optional[Callable[[], int]] = None):
        self.ledger = ledger
        self._clock = clock or (lambda: int(time.time()))
        self.address = contract_address(f"perpx.{self.label}")
        self.last_run = 0
        self.run_count = 0
        self.total_liquidated = 0

    def _run(self) -> int:
        liquidated = self.ledger.liquidate_positions(self.address)
        self.last_run = self._clock()
        self.run_count += 1
        self.total_liquidated += liquidated
        logger.info("%s sweep #%d: %d liquidated", self.label, self.run_count, liquidated)
        return liquidated


class IntervalLiquidationTrigger(_LiquidationTrigger):
    label = "interval-trigger"

    def __init__(
        self,
        ledger: PositionLedger,
        interval: int = LIQUIDATION_INTERVAL_SECONDS,
        clock: Optional[Callable[[], int]] = None,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        super().__init__(ledger, clock)
        self.interval = interval

    def check_upkeep(self) -> Tuple[bool, str]:
        if self.run_count == 0:
            return True, "first run"
        elapsed = self._clock() - self.last_run
        if elapsed >= self.interval:
            return True, f"{elapsed}s since last sweep"
        return False, f"next sweep in {self.interval - elapsed}s"

    def perform_upkeep(self) -> int:
        needed, reason = self.check_upkeep()
        if not needed:
            raise UpkeepNotNeededError(f"Upkeep not needed: {reason}")
        return self._run()


class EventLiquidationTrigger(_LiquidationTrigger):
    """
    Sweeps in reaction to trading activity.

    Subscribes to the ledger's event bus for position opens and closes.
    Runs at most once per cooldown window.
    """

    label = "event-trigger"

    def __init__(
        self,
        ledger: PositionLedger,
        cooldown: int = LIQUIDATION_EVENT_COOLDOWN,
        clock: Optional[Callable[[], int]] = None,
        subscribe: bool = True,
    ):
        if cooldown < 0:
            raise ValueError("cooldown must be non-negative")
        super().__init__(ledger, clock)
        self.cooldown = cooldown
        if subscribe:
            ledger.bus.subscribe(self.on_event, EventFlags.TRADING)

    @staticmethod
    def check_log(event: LedgerEvent) -> bool:
        return isinstance(event, (PositionOpened, PositionClosed))

    def cooling_down(self) -> bool:
        return self.run_count > 0 and self._clock() - self.last_run < self.cooldown

    def perform_upkeep(self) -> int:
        if self.cooling_down():
            raise UpkeepNotNeededError("Cooldown active")
        return self._run()

    def on_event(self, event: LedgerEvent) -> None:
        if not self.check_log(event) or self.cooling_down():
            return
        self._run()


class ManualLiquidationTrigger(_LiquidationTrigger):
    label = "manual-trigger"

    def __init__(self, ledger: PositionLedger, owner: str, clock: Optional[Callable[[], int]] = None):
        super().__init__(ledger, clock)
        self.owner = normalize_address(owner)

    def perform_upkeep(self, sender: str) -> int:
        if normalize_address(sender) != self.owner:
            raise AuthorizationError("Only owner can force a sweep")
        logger.warning("Forced liquidation sweep by %s", self.owner)
        return self._run()
