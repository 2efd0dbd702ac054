"""
PerpX Ledger Event Hooks

The ledger publishes an event after every committed state change:
  - deposits / withdrawals
  - position opened / closed / liquidated
  - holding fees collected
  - liquidation sweep summaries
  - market status changes

Subscribers run synchronously, in registration order, after the change is
applied. A failing subscriber is logged and skipped; it cannot undo the
operation that emitted the event.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Flag, auto
from typing import Callable, ClassVar, List, Tuple

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Event flags: which events a subscriber wants to receive
# ---------------------------------------------------------------------------

class EventFlags(Flag):
    NONE = 0
    DEPOSIT = auto()
    WITHDRAWAL = auto()
    POSITION_OPENED = auto()
    POSITION_CLOSED = auto()
    POSITION_LIQUIDATED = auto()
    HOLDING_FEE_COLLECTED = auto()
    LIQUIDATION_SWEEP = auto()
    MARKET_STATUS = auto()
    TRADING = POSITION_OPENED | POSITION_CLOSED
    ALL = (DEPOSIT | WITHDRAWAL | POSITION_OPENED | POSITION_CLOSED | POSITION_LIQUIDATED
           | HOLDING_FEE_COLLECTED | LIQUIDATION_SWEEP | MARKET_STATUS)


# ---------------------------------------------------------------------------
# Events
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LedgerEvent:
    flag: ClassVar[EventFlags] = EventFlags.NONE
    timestamp: int


@dataclass(frozen=True)
class Deposited(LedgerEvent):
    flag: ClassVar[EventFlags] = EventFlags.DEPOSIT
    user: str = ""
    amount: int = 0
    on_behalf_of: bool = False


@dataclass(frozen=True)
class Withdrawn(LedgerEvent):
    flag: ClassVar[EventFlags] = EventFlags.WITHDRAWAL
    user: str = ""
    amount: int = 0


@dataclass(frozen=True)
class PositionOpened(LedgerEvent):
    flag: ClassVar[EventFlags] = EventFlags.POSITION_OPENED
    user: str = ""
    symbol: str = ""
    size: int = 0
    collateral: int = 0
    leverage: int = 0
    is_long: bool = True
    entry_price: int = 0
    opening_fee: int = 0


@dataclass(frozen=True)
class PositionClosed(LedgerEvent):
    flag: ClassVar[EventFlags] = EventFlags.POSITION_CLOSED
    user: str = ""
    symbol: str = ""
    exit_price: int = 0
    pnl: int = 0
    total_fees: int = 0
    settlement: int = 0


@dataclass(frozen=True)
class PositionLiquidated(LedgerEvent):
    flag: ClassVar[EventFlags] = EventFlags.POSITION_LIQUIDATED
    user: str = ""
    symbol: str = ""
    liquidator: str = ""
    price: int = 0
    pnl: int = 0
    forfeited_collateral: int = 0


@dataclass(frozen=True)
class HoldingFeeCollected(LedgerEvent):
    flag: ClassVar[EventFlags] = EventFlags.HOLDING_FEE_COLLECTED
    user: str = ""
    symbol: str = ""
    fee: int = 0
    periods: int = 0


@dataclass(frozen=True)
class LiquidationSweep(LedgerEvent):
    flag: ClassVar[EventFlags] = EventFlags.LIQUIDATION_SWEEP
    liquidator: str = ""
    checked: int = 0
    liquidated: int = 0
    skipped_symbols: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MarketStatusChanged(LedgerEvent):
    flag: ClassVar[EventFlags] = EventFlags.MARKET_STATUS
    symbol: str = ""
    active: bool = True


EventHandler = Callable[[LedgerEvent], None]


# ---------------------------------------------------------------------------
# Event bus
# ---------------------------------------------------------------------------

class EventBus:
    """
    Registry of ledger event subscribers.

    Also keeps the append-only event log consumers and tests read.
    """

    def __init__(self) -> None:
        self._subscribers: List[Tuple[EventFlags, EventHandler]] = []
        self.log: List[LedgerEvent] = []

    def subscribe(self, handler: EventHandler, flags: EventFlags = EventFlags.ALL) -> None:
        self._subscribers.append((flags, handler))
        logger.info("Event subscriber registered: %s (flags=%s)", _handler_name(handler), flags)

    def unsubscribe(self, handler: EventHandler) -> None:
        self._subscribers = [(f, h) for f, h in self._subscribers if h != handler]

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, event: LedgerEvent) -> None:
        self.log.append(event)
        for flags, handler in list(self._subscribers):
            if event.flag & flags:
                try:
                    handler(event)
                except Exception:
                    logger.exception(
                        "Event subscriber %s failed on %s",
                        _handler_name(handler), type(event).__name__,
                    )

    def events_of(self, event_type: type) -> List[LedgerEvent]:
        return [e for e in self.log if isinstance(e, event_type)]


def _handler_name(handler: EventHandler) -> str:
    return getattr(handler, "__qualname__", type(handler).__name__)
