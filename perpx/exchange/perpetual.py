"""
PerpX Perpetuals Ledger

Isolated-margin perpetual positions against a pooled vault:
  - One position per (user, market symbol), at most one open at a time
  - Collateral and balances in 6-decimal USD, prices in 8 decimals
  - Opening / closing / holding fees and profit tax via FeeEngine
  - Risk (P&L, liquidation price, liquidatability) via RiskCalculator
  - Live oracle price on every open, close, liquidation and valuation
  - Permissionless single-position liquidation and full sweep
  - Bridge-credited deposits restricted to the pool manager

Safety:
  - Per-user free balance cap and aggregate exposure cap
  - Every operation validates completely before the first write
  - Optional oracle staleness guard
  - Market aggregates updated together with every position change
  - Open-position index maintained incrementally for the sweep
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Tuple

from ..constants import (
    DEFAULT_MAINTENANCE_MARGIN_BPS,
    DEFAULT_MAX_BALANCE,
    DEFAULT_MAX_EXPOSURE,
    DEFAULT_MAX_LEVERAGE,
    BPS_DENOMINATOR,
    from_units,
)
from ..crypto.hashing import contract_address, normalize_address
from ..exceptions import (
    AuthorizationError,
    BalanceCapExceededError,
    ExposureCapExceededError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidLeverageError,
    MarketExistsError,
    MarketInactiveError,
    NotLiquidatableError,
    OpenPositionsError,
    OracleError,
    PositionExistsError,
    PositionNotFoundError,
    UnknownMarketError,
    ValidationError,
)
from .fees import FeeEngine
from .hooks import (
    Deposited,
    EventBus,
    HoldingFeeCollected,
    LiquidationSweep,
    MarketStatusChanged,
    PositionClosed,
    PositionLiquidated,
    PositionOpened,
    Withdrawn,
)
from .oracle import PriceFeed
from .risk import PositionState, RiskCalculator

if TYPE_CHECKING:
    from ..automation.randomizer import FairnessRandomizer

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass
class Position:
    """A single (user, symbol) position slot."""
    owner: str
    symbol: str
    size: int = 0                  # notional, 6-dec USD
    collateral: int = 0            # posted margin, 6-dec USD
    entry_price: int = 0           # 8 decimals
    leverage: int = 0
    is_long: bool = True
    is_open: bool = False
    open_time: int = 0
    last_fee_time: int = 0         # holding-fee high-water mark

    @property
    def side(self) -> str:
        return "LONG" if self.is_long else "SHORT"


@dataclass
class Market:
    """Configuration and aggregate open notional for one symbol."""
    symbol: str
    max_leverage: int = DEFAULT_MAX_LEVERAGE
    maintenance_margin_bps: int = DEFAULT_MAINTENANCE_MARGIN_BPS
    total_long_size: int = 0
    total_short_size: int = 0
    is_active: bool = True

    @property
    def open_interest(self) -> int:
        return self.total_long_size + self.total_short_size


@dataclass(frozen=True)
class PositionView:
    """Stored position fields joined with live risk figures."""
    owner: str
    symbol: str
    size: int
    collateral: int
    entry_price: int
    leverage: int
    is_long: bool
    is_open: bool
    open_time: int
    last_fee_time: int
    current_price: int = 0
    liquidation_price: int = 0
    unrealized_pnl: int = 0
    accrued_fees: int = 0          # holding fee owed so far
    net_pnl: int = 0               # pnl after holding, closing fee and profit tax
    margin_ratio: int = 0          # bps
    can_liquidate: bool = False
    state: PositionState = PositionState.NOT_OPEN


@dataclass(frozen=True)
class LedgerLimits:
    """Per-user safety caps (6-dec USD)."""
    max_balance: int = DEFAULT_MAX_BALANCE
    max_exposure: int = DEFAULT_MAX_EXPOSURE

    def __post_init__(self):
        if self.max_balance <= 0 or self.max_exposure <= 0:
            raise ValueError("Ledger limits must be positive")


@dataclass(frozen=True)
class UserLimits:
    max_balance: int
    current_balance: int
    max_exposure: int
    current_exposure: int
    remaining_capacity: int


# ---------------------------------------------------------------------------
# Position ledger
# ---------------------------------------------------------------------------

class PositionLedger:
    """
    Owner of every position, market and balance.

    All mutations run to completion before the call returns; a rejected
    call leaves state exactly as it found it. Collaborators (price feed,
    fee engine, risk calculator, randomizer) are injected so tests can
    substitute deterministic doubles.
    """

    def __init__(
        self,
        price_feed: PriceFeed,
        fee_engine: Optional[FeeEngine] = None,
        risk: Optional[RiskCalculator] = None,
        *,
        owner: str,
        limits: LedgerLimits = LedgerLimits(),
        clock: Optional[Callable[[], int]] = None,
        randomizer: Optional["FairnessRandomizer"] = None,
        max_price_age: int = 0,
        address: Optional[str] = None,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.price_feed = price_feed
        self.fees = fee_engine or FeeEngine()
        self.risk = risk or RiskCalculator(self.fees)
        self.owner = normalize_address(owner)
        self.address = normalize_address(address) if address else contract_address("perpx.ledger")
        self.limits = limits
        self.max_price_age = max_price_age
        self.randomizer = randomizer
        self.bus = bus or EventBus()
        self._clock = clock or (lambda: int(time.time()))

        self._markets: Dict[str, Market] = {}
        self._balances: Dict[str, int] = {}
        self._positions: Dict[Tuple[str, str], Position] = {}
        # users that ever held a balance or position, in first-seen order
        self._users: List[str] = []
        self._seen_users: set = set()
        # user -> {symbol: None}; only currently open positions
        self._open_index: Dict[str, Dict[str, None]] = {}
        self.pool_manager: Optional[str] = None

        self.fees_collected: int = 0
        self.forfeited_collateral: int = 0

    # -- Properties ---------------------------------------------------------

    @property
    def now(self) -> int:
        return self._clock()

    @property
    def events(self):
        return self.bus.log

    @property
    def market_count(self) -> int:
        return len(self._markets)

    # -- Admin --------------------------------------------------------------

    def add_market(
        self,
        symbol: str,
        sender: str,
        max_leverage: int = DEFAULT_MAX_LEVERAGE,
        maintenance_margin_bps: int = DEFAULT_MAINTENANCE_MARGIN_BPS,
        active: bool = True,
    ) -> Market:
        self._only_owner(sender)
        if not symbol:
            raise ValidationError("Symbol required")
        if symbol in self._markets:
            raise MarketExistsError(f"Market {symbol} already exists")
        if max_leverage < 1:
            raise InvalidLeverageError("Max leverage must be at least 1x")
        if not 0 < maintenance_margin_bps < BPS_DENOMINATOR:
            raise ValidationError("Maintenance margin must be between 0 and 10000 bps")

        market = Market(
            symbol=symbol,
            max_leverage=max_leverage,
            maintenance_margin_bps=maintenance_margin_bps,
            is_active=active,
        )
        self._markets[symbol] = market
        logger.info(
            "Market created: %s (max %dx, maintenance %d bps)",
            symbol, max_leverage, maintenance_margin_bps,
        )
        return market

    def set_market_active(self, symbol: str, active: bool, sender: str) -> None:
        self._only_owner(sender)
        market = self._require_market(symbol)
        market.is_active = active
        logger.info("Market %s %s", symbol, "activated" if active else "deactivated")
        self.bus.emit(MarketStatusChanged(timestamp=self.now, symbol=symbol, active=active))

    def set_pool_manager(self, pool_manager: str, sender: str) -> None:
        """Authorize the bridge-settlement collaborator to credit users."""
        self._only_owner(sender)
        self.pool_manager = normalize_address(pool_manager)
        logger.info("Pool manager set: %s", self.pool_manager)

    def set_randomizer(self, randomizer: Optional["FairnessRandomizer"], sender: str) -> None:
        self._only_owner(sender)
        self.randomizer = randomizer

    def set_limits(self, limits: LedgerLimits, sender: str) -> None:
        self._only_owner(sender)
        self.limits = limits
        logger.info(
            "Limits updated: max balance $%s, max exposure $%s",
            from_units(limits.max_balance), from_units(limits.max_exposure),
        )

    # -- Balances -----------------------------------------------------------

    def deposit_usdc(self, sender: str, amount: int) -> int:
        """
        Credit the caller's free balance.

        Returns:
            The new balance

        Raises:
            InvalidAmountError: amount <= 0
            BalanceCapExceededError: balance would exceed the per-user cap
        """
        user = normalize_address(sender)
        return self._credit_deposit(user, amount, on_behalf_of=False)

    def deposit_usdc_for_user(self, sender: str, user: str, amount: int) -> int:
        """Bridge credit path; only the pool manager may call it."""
        caller = normalize_address(sender)
        if self.pool_manager is None or caller != self.pool_manager:
            raise AuthorizationError("Only pool manager can deposit for users")
        return self._credit_deposit(normalize_address(user), amount, on_behalf_of=True)

    def debit_usdc_for_user(self, sender: str, user: str, amount: int) -> int:
        """
        Take back bridge credit that the delivered asset did not cover.

        Only the pool manager may call it, and only from free balance;
        collateral locked in open positions is never touched.

        Raises:
            AuthorizationError, InvalidAmountError, InsufficientBalanceError
        """
        caller = normalize_address(sender)
        if self.pool_manager is None or caller != self.pool_manager:
            raise AuthorizationError("Only pool manager can debit users")
        owner = normalize_address(user)
        if amount <= 0:
            raise InvalidAmountError("Amount must be greater than 0")
        balance = self._balances.get(owner, 0)
        if balance < amount:
            raise InsufficientBalanceError(
                f"Insufficient balance: ${from_units(balance)} < ${from_units(amount)}"
            )

        self._balances[owner] = balance - amount
        logger.info("Bridge debit: %s $%s", owner, from_units(amount))
        self.bus.emit(Withdrawn(timestamp=self.now, user=owner, amount=amount))
        return self._balances[owner]

    def withdraw_usdc(self, sender: str, amount: int) -> int:
        user = normalize_address(sender)
        if amount <= 0:
            raise InvalidAmountError("Amount must be greater than 0")
        if self._open_index.get(user):
            raise OpenPositionsError("Close all positions first")
        balance = self._balances.get(user, 0)
        if balance < amount:
            raise InsufficientBalanceError(
                f"Insufficient balance: ${from_units(balance)} < ${from_units(amount)}"
            )

        self._balances[user] = balance - amount
        logger.info("Withdrawal: %s $%s", user, from_units(amount))
        self.bus.emit(Withdrawn(timestamp=self.now, user=user, amount=amount))
        return self._balances[user]

    def _credit_deposit(self, user: str, amount: int, on_behalf_of: bool) -> int:
        if amount <= 0:
            raise InvalidAmountError("Amount must be greater than 0")
        balance = self._balances.get(user, 0)
        if balance + amount > self.limits.max_balance:
            raise BalanceCapExceededError(
                f"Max ${from_units(self.limits.max_balance)} per user"
            )

        self._balances[user] = balance + amount
        self._remember_user(user)
        logger.info(
            "Deposit%s: %s $%s",
            " (bridge)" if on_behalf_of else "", user, from_units(amount),
        )
        self.bus.emit(Deposited(timestamp=self.now, user=user, amount=amount, on_behalf_of=on_behalf_of))
        return self._balances[user]

    # -- Position management ------------------------------------------------

    def open_position(
        self,
        sender: str,
        symbol: str,
        collateral: int,
        leverage: int,
        is_long: bool,
    ) -> Position:
        """
        Open a position in ``symbol`` backed by ``collateral`` from the
        caller's free balance.

        Args:
            sender: position owner
            symbol: market symbol, e.g. "BTC/USD"
            collateral: margin in 6-dec USD
            leverage: 1 … market max leverage
            is_long: direction

        Returns:
            The opened Position

        Raises:
            UnknownMarketError, MarketInactiveError, InvalidLeverageError,
            InvalidAmountError, PositionExistsError, InsufficientBalanceError,
            ExposureCapExceededError, OracleError
        """
        user = normalize_address(sender)
        market = self._require_market(symbol)
        if not market.is_active:
            raise MarketInactiveError(f"Market {symbol} is not active")
        if leverage < 1 or leverage > market.max_leverage:
            raise InvalidLeverageError(f"Max leverage is {market.max_leverage}x")
        if collateral <= 0:
            raise InvalidAmountError("Collateral must be greater than 0")

        existing = self._positions.get((user, symbol))
        if existing is not None and existing.is_open:
            raise PositionExistsError(f"Position already open for {symbol}")

        opening_fee = self.fees.opening_fee(collateral)
        required = collateral + opening_fee
        balance = self._balances.get(user, 0)
        if balance < required:
            raise InsufficientBalanceError(
                f"Insufficient balance: ${from_units(balance)} < ${from_units(required)}"
            )

        size = collateral * leverage
        exposure = self.get_total_exposure(user)
        if exposure + size > self.limits.max_exposure:
            raise ExposureCapExceededError(
                f"Max exposure ${from_units(self.limits.max_exposure)} per user"
            )

        price = self._price(symbol)
        now = self.now

        # --- commit ---
        position = Position(
            owner=user,
            symbol=symbol,
            size=size,
            collateral=collateral,
            entry_price=price,
            leverage=leverage,
            is_long=is_long,
            is_open=True,
            open_time=now,
            last_fee_time=now,
        )
        self._positions[(user, symbol)] = position
        self._balances[user] = balance - required
        self.fees_collected += opening_fee
        self._add_to_market(market, position)
        self._open_index.setdefault(user, {})[symbol] = None
        self._remember_user(user)

        logger.info(
            "Position opened: %s %s %s size=$%s collateral=$%s %dx @ %s",
            user, symbol, position.side, from_units(size), from_units(collateral),
            leverage, from_units(price, 8),
        )
        self.bus.emit(PositionOpened(
            timestamp=now, user=user, symbol=symbol, size=size, collateral=collateral,
            leverage=leverage, is_long=is_long, entry_price=price, opening_fee=opening_fee,
        ))
        return position

    def close_position(self, sender: str, symbol: str) -> int:
        """
        Close the caller's position at the live price.

        Holding fee, closing fee and (on profit) profit tax are netted
        against collateral + P&L. A negative result credits nothing.

        Returns:
            The amount credited to the caller's balance
        """
        user = normalize_address(sender)
        position = self._require_open_position(user, symbol)
        market = self._markets[symbol]

        price = self._price(symbol)
        now = self.now

        holding_fee = self.fees.holding_fee(position, now)
        pnl = self.risk.pnl(position, price)
        closing_fee = self.fees.closing_fee(position.collateral)
        profit_tax = self.fees.profit_tax(pnl)
        total_fees = holding_fee + closing_fee + profit_tax

        settlement = position.collateral + pnl - total_fees
        credit = settlement if settlement > 0 else 0

        # --- commit ---
        position.last_fee_time = self.fees.advance_fee_time(position, now)
        position.is_open = False
        self._remove_from_market(market, position)
        self._drop_from_index(user, symbol)
        self._balances[user] = self._balances.get(user, 0) + credit
        self.fees_collected += total_fees

        logger.info(
            "Position closed: %s %s pnl=$%s fees=$%s credited=$%s",
            user, symbol, from_units(pnl), from_units(total_fees), from_units(credit),
        )
        self.bus.emit(PositionClosed(
            timestamp=now, user=user, symbol=symbol, exit_price=price, pnl=pnl,
            total_fees=total_fees, settlement=credit,
        ))
        return credit

    def settle_holding_fees(self, sender: str, user: str, symbol: str) -> int:
        """
        Charge the accrued holding fee out of an open position's collateral.

        Anyone may call this. Only whole periods are charged and the fee
        high-water mark advances by exactly those periods.

        Returns:
            The fee charged (0 when no whole period has elapsed)
        """
        owner = normalize_address(user)
        position = self._require_open_position(owner, symbol)
        now = self.now

        periods = self.fees.holding_periods(position, now)
        if periods == 0:
            return 0
        fee = min(self.fees.holding_fee(position, now), position.collateral)

        position.collateral -= fee
        position.last_fee_time = self.fees.advance_fee_time(position, now)
        self.fees_collected += fee

        logger.info(
            "Holding fee collected: %s %s $%s (%d periods) by %s",
            owner, symbol, from_units(fee), periods, normalize_address(sender),
        )
        self.bus.emit(HoldingFeeCollected(
            timestamp=now, user=owner, symbol=symbol, fee=fee, periods=periods,
        ))
        return fee

    # -- Liquidation --------------------------------------------------------

    def liquidate_position(self, sender: str, user: str, symbol: str) -> int:
        """
        Liquidate one position. Permissionless.

        Returns:
            The forfeited collateral

        Raises:
            PositionNotFoundError: nothing open for (user, symbol)
            NotLiquidatableError: position is currently healthy
        """
        liquidator = normalize_address(sender)
        owner = normalize_address(user)
        position = self._require_open_position(owner, symbol)
        market = self._markets[symbol]

        price = self._price(symbol)
        now = self.now
        if not self.risk.can_liquidate(position, market, price, now):
            raise NotLiquidatableError("Not liquidatable")

        return self._liquidate(position, market, price, now, liquidator)

    def liquidate_positions(self, sender: Optional[str] = None) -> int:
        """
        Sweep every open position and liquidate the eligible ones.

        Users are visited in randomizer-shuffled order when a seeded
        randomizer is attached. Prices are read once per symbol; a symbol
        whose price cannot be read is skipped for this sweep.

        Returns:
            Number of positions liquidated
        """
        liquidator = normalize_address(sender) if sender else self.address
        now = self.now

        users = list(self._open_index)
        if self.randomizer is not None and self.randomizer.has_value:
            users = self.randomizer.shuffle(users)

        prices: Dict[str, Optional[int]] = {}
        skipped: List[str] = []
        checked = 0
        liquidated = 0

        for user in users:
            for symbol in list(self._open_index.get(user, ())):
                if symbol not in prices:
                    try:
                        prices[symbol] = self._price(symbol)
                    except (OracleError, UnknownMarketError) as e:
                        prices[symbol] = None
                        skipped.append(symbol)
                        logger.warning("Sweep skipping %s: %s", symbol, e)
                price = prices[symbol]
                if price is None:
                    continue

                position = self._positions[(user, symbol)]
                market = self._markets[symbol]
                checked += 1
                if self.risk.can_liquidate(position, market, price, now):
                    self._liquidate(position, market, price, now, liquidator)
                    liquidated += 1

        logger.info("Liquidation sweep: checked=%d liquidated=%d", checked, liquidated)
        self.bus.emit(LiquidationSweep(
            timestamp=now, liquidator=liquidator, checked=checked,
            liquidated=liquidated, skipped_symbols=tuple(skipped),
        ))

        if self.randomizer is not None and self.randomizer.is_authorized(self.address):
            self.randomizer.refresh(self.address)

        return liquidated

    def _liquidate(self, position: Position, market: Market, price: int, now: int, liquidator: str) -> int:
        pnl = self.risk.pnl(position, price)
        forfeited = position.collateral

        position.is_open = False
        self._remove_from_market(market, position)
        self._drop_from_index(position.owner, position.symbol)
        self.forfeited_collateral += forfeited

        logger.warning(
            "Position liquidated: %s %s %s pnl=$%s forfeited=$%s by %s",
            position.owner, position.symbol, position.side,
            from_units(pnl), from_units(forfeited), liquidator,
        )
        self.bus.emit(PositionLiquidated(
            timestamp=now, user=position.owner, symbol=position.symbol,
            liquidator=liquidator, price=price, pnl=pnl, forfeited_collateral=forfeited,
        ))
        return forfeited

    # -- Reads --------------------------------------------------------------

    def get_position(self, user: str, symbol: str) -> PositionView:
        """
        Position health view: stored fields plus live price, liquidation
        price, unrealized and net P&L, accrued fees and liquidatability.
        """
        owner = normalize_address(user)
        market = self._require_market(symbol)
        position = self._positions.get((owner, symbol)) or Position(owner=owner, symbol=symbol)
        view = PositionView(
            owner=owner,
            symbol=symbol,
            size=position.size,
            collateral=position.collateral,
            entry_price=position.entry_price,
            leverage=position.leverage,
            is_long=position.is_long,
            is_open=position.is_open,
            open_time=position.open_time,
            last_fee_time=position.last_fee_time,
        )
        if not position.is_open:
            return replace(view, state=PositionState.CLOSED if position.open_time else PositionState.NOT_OPEN)

        price = self._price(symbol)
        now = self.now
        pnl = self.risk.pnl(position, price)
        holding_fee = self.fees.holding_fee(position, now)
        net_pnl = (
            pnl
            - holding_fee
            - self.fees.closing_fee(position.collateral)
            - self.fees.profit_tax(pnl)
        )
        can_liquidate = self.risk.can_liquidate(position, market, price, now)
        return replace(
            view,
            current_price=price,
            liquidation_price=self.risk.liquidation_price(position, market, now),
            unrealized_pnl=pnl,
            accrued_fees=holding_fee,
            net_pnl=net_pnl,
            margin_ratio=self.risk.margin_ratio(position, price, now),
            can_liquidate=can_liquidate,
            state=PositionState.LIQUIDATABLE if can_liquidate else PositionState.HEALTHY,
        )

    def get_balance(self, user: str) -> int:
        return self._balances.get(normalize_address(user), 0)

    def get_market(self, symbol: str) -> Market:
        return replace(self._require_market(symbol))

    def get_market_symbols(self) -> List[str]:
        return list(self._markets)

    def get_users(self) -> List[str]:
        return list(self._users)

    def get_open_positions(self) -> List[Tuple[str, str]]:
        return [(user, symbol) for user, symbols in self._open_index.items() for symbol in symbols]

    def get_total_exposure(self, user: str) -> int:
        owner = normalize_address(user)
        return sum(self._positions[(owner, s)].size for s in self._open_index.get(owner, ()))

    def get_user_limits(self, user: str) -> UserLimits:
        owner = normalize_address(user)
        exposure = self.get_total_exposure(owner)
        return UserLimits(
            max_balance=self.limits.max_balance,
            current_balance=self._balances.get(owner, 0),
            max_exposure=self.limits.max_exposure,
            current_exposure=exposure,
            remaining_capacity=max(self.limits.max_exposure - exposure, 0),
        )

    # -- Helpers ------------------------------------------------------------

    def _price(self, symbol: str) -> int:
        price, _ = self.price_feed.get_fresh_price(symbol, self.max_price_age)
        return price

    def _require_market(self, symbol: str) -> Market:
        market = self._markets.get(symbol)
        if market is None:
            raise UnknownMarketError(f"Market {symbol} not found")
        return market

    def _require_open_position(self, user: str, symbol: str) -> Position:
        self._require_market(symbol)
        position = self._positions.get((user, symbol))
        if position is None or not position.is_open:
            raise PositionNotFoundError(f"No open position for {symbol}")
        return position

    @staticmethod
    def _add_to_market(market: Market, position: Position) -> None:
        if position.is_long:
            market.total_long_size += position.size
        else:
            market.total_short_size += position.size

    @staticmethod
    def _remove_from_market(market: Market, position: Position) -> None:
        if position.is_long:
            market.total_long_size -= position.size
        else:
            market.total_short_size -= position.size

    def _drop_from_index(self, user: str, symbol: str) -> None:
        symbols = self._open_index.get(user)
        if symbols is None:
            return
        symbols.pop(symbol, None)
        if not symbols:
            del self._open_index[user]

    def _remember_user(self, user: str) -> None:
        if user not in self._seen_users:
            self._seen_users.add(user)
            self._users.append(user)

    def _only_owner(self, sender: str) -> None:
        if normalize_address(sender) != self.owner:
            raise AuthorizationError("Only owner can call this")
