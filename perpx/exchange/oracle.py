"""
PerpX Price Oracle

Wraps external price aggregators behind one symbol-keyed feed:
  - Heterogeneous source precision normalized to 8 decimals
  - Non-positive answers and never-updated rounds rejected
  - Staleness check method
  - Admin-only feed registration

Prices are never cached by the ledger: every open, close, liquidation and
valuation reads the feed at the moment of use.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from ..constants import PRICE_DECIMALS
from ..crypto.hashing import normalize_address
from ..exceptions import (
    AuthorizationError,
    InvalidQuoteError,
    StalePriceError,
    UnknownMarketError,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Source interface
# ---------------------------------------------------------------------------

class PriceSource(Protocol):
    """Shape of an external aggregator (answer + update time)."""

    @property
    def decimals(self) -> int: ...

    def latest_round_data(self) -> Tuple[int, int]: ...


class StaticPriceSource:
    """
    In-memory aggregator with a settable answer.

    Deterministic double for tests and the CLI simulator.
    """

    def __init__(self, answer: int, decimals: int = PRICE_DECIMALS, updated_at: Optional[int] = None,
                 clock: Optional[Callable[[], int]] = None):
        self._clock = clock or (lambda: int(time.time()))
        self._decimals = decimals
        self._answer = answer
        self._updated_at = self._clock() if updated_at is None else updated_at

    @property
    def decimals(self) -> int:
        return self._decimals

    def update_answer(self, answer: int, updated_at: Optional[int] = None) -> None:
        self._answer = answer
        self._updated_at = self._clock() if updated_at is None else updated_at

    def latest_round_data(self) -> Tuple[int, int]:
        return self._answer, self._updated_at


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PriceQuote:
    """A normalized price observation."""
    symbol: str
    price: int          # 8 decimals
    updated_at: int


# ---------------------------------------------------------------------------
# Price feed
# ---------------------------------------------------------------------------

class PriceFeed:
    """
    Symbol → source registry with decimal normalization.

    Reads are pure; only the admin registration calls mutate state.
    """

    def __init__(self, owner: str, clock: Optional[Callable[[], int]] = None):
        self.owner = normalize_address(owner)
        self._clock = clock or (lambda: int(time.time()))
        self._sources: Dict[str, PriceSource] = {}

    # -- Admin --------------------------------------------------------------

    def set_price_feed(self, symbol: str, source: PriceSource, sender: str) -> None:
        self._only_owner(sender)
        if source.decimals < 0:
            raise InvalidQuoteError(f"Invalid source decimals for {symbol}")
        self._sources[symbol] = source
        logger.info("Price feed set: %s (%d decimals)", symbol, source.decimals)

    def remove_price_feed(self, symbol: str, sender: str) -> None:
        self._only_owner(sender)
        if self._sources.pop(symbol, None) is None:
            raise UnknownMarketError(f"Price feed not set: {symbol}")
        logger.info("Price feed removed: %s", symbol)

    # -- Reads --------------------------------------------------------------

    def has_feed(self, symbol: str) -> bool:
        return symbol in self._sources

    def symbols(self) -> List[str]:
        return list(self._sources)

    def get_price(self, symbol: str) -> Tuple[int, int]:
        """
        Latest price for a symbol, normalized to 8 decimals.

        Returns:
            (price, updated_at)

        Raises:
            UnknownMarketError: no feed registered for the symbol
            InvalidQuoteError: non-positive answer or zero timestamp
        """
        source = self._sources.get(symbol)
        if source is None:
            raise UnknownMarketError(f"Price feed not set: {symbol}")

        answer, updated_at = source.latest_round_data()
        if answer <= 0:
            raise InvalidQuoteError(f"Invalid price for {symbol}: {answer}")
        if updated_at == 0:
            raise InvalidQuoteError(f"Price for {symbol} has never been updated")

        return self.normalize(answer, source.decimals), updated_at

    def get_quote(self, symbol: str) -> PriceQuote:
        price, updated_at = self.get_price(symbol)
        return PriceQuote(symbol=symbol, price=price, updated_at=updated_at)

    def is_stale(self, symbol: str, max_age: int, now: Optional[int] = None) -> bool:
        """True when the latest update is older than ``max_age`` seconds."""
        _, updated_at = self.get_price(symbol)
        current = self._clock() if now is None else now
        return current - updated_at > max_age

    def get_fresh_price(self, symbol: str, max_age: int) -> Tuple[int, int]:
        """get_price, rejecting quotes older than ``max_age`` (0 disables)."""
        price, updated_at = self.get_price(symbol)
        if max_age > 0:
            age = self._clock() - updated_at
            if age > max_age:
                raise StalePriceError(
                    f"Price for {symbol} stale: {age}s old (max {max_age}s)"
                )
        return price, updated_at

    # -- Helpers ------------------------------------------------------------

    @staticmethod
    def normalize(answer: int, decimals: int) -> int:
        """Rescale an answer with ``decimals`` precision to 8 decimals."""
        if decimals < PRICE_DECIMALS:
            return answer * 10 ** (PRICE_DECIMALS - decimals)
        if decimals > PRICE_DECIMALS:
            return answer // 10 ** (decimals - PRICE_DECIMALS)
        return answer

    def _only_owner(self, sender: str) -> None:
        if normalize_address(sender) != self.owner:
            raise AuthorizationError("Only owner can manage price feeds")
