"""
PerpX Protocol Assembly

Wires price feed, ledger, randomizer, liquidation triggers and the bridge
from a PerpXConfig. Every component is an explicit object owned by the
returned Protocol; nothing is module-global.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .automation.randomizer import FairnessRandomizer, QueuedRandomnessSource
from .automation.triggers import (
    EventLiquidationTrigger,
    IntervalLiquidationTrigger,
    ManualLiquidationTrigger,
)
from .bridge.settlement import CrossChainManager, PoolManager
from .bridge.transport import InMemoryTransport
from .bridge.types import BridgeTokenConfig, ChainSelector
from .config.loader import PerpXConfig
from .crypto.hashing import contract_address, normalize_address
from .exceptions import BridgeNotConfiguredError
from .exchange.fees import FeeEngine
from .exchange.oracle import PriceFeed
from .exchange.perpetual import LedgerLimits, PositionLedger
from .logger import get_logger

logger = get_logger(__name__)


@dataclass
class Protocol:
    config: PerpXConfig
    owner: str
    price_feed: PriceFeed
    ledger: PositionLedger
    interval_trigger: IntervalLiquidationTrigger
    manual_trigger: ManualLiquidationTrigger
    event_trigger: Optional[EventLiquidationTrigger] = None
    randomizer: Optional[FairnessRandomizer] = None
    randomness_source: Optional[QueuedRandomnessSource] = None
    transport: Optional[InMemoryTransport] = None
    pool_manager: Optional[PoolManager] = None
    bridge: Optional[CrossChainManager] = None
    origins: Dict[ChainSelector, CrossChainManager] = field(default_factory=dict)

    def add_origin_chain(
        self,
        chain: ChainSelector,
        token: str,
        symbol: str = "USDC",
        dest_token: Optional[str] = None,
    ) -> CrossChainManager:
        """
        Deploy a CrossChainManager on ``chain`` that deposits into this ledger.

        Allow-lists the route in both directions and accepts ``token``, the
        origin-chain address, which arrives here as ``dest_token`` (the
        settlement token when None).
        """
        if self.bridge is None or self.transport is None or self.pool_manager is None:
            raise BridgeNotConfiguredError("Bridge disabled in config")

        dest_token = dest_token or self.pool_manager.settlement_token.address
        self.pool_manager.map_origin_token(chain, token, dest_token, self.owner)
        self.transport.register_token_route(chain, token, self.bridge.chain, dest_token)

        origin = CrossChainManager(chain, self.transport, self.owner, fee_token=self.config.bridge.fee_token)
        origin.add_supported_token(token, symbol, self.owner)
        origin.allowlist_destination(self.bridge.chain, self.bridge.address, self.owner)
        self.bridge.allowlist_source(chain, origin.address, self.owner)
        self.origins[chain] = origin
        return origin


def build_protocol(
    config: Optional[PerpXConfig] = None,
    price_feed: Optional[PriceFeed] = None,
    owner: str = "",
    clock: Optional[Callable[[], int]] = None,
    transport: Optional[InMemoryTransport] = None,
) -> Protocol:
    """
    Assemble a ready-to-use protocol.

    Args:
        config: validated PerpXConfig (defaults when None)
        price_feed: existing feed; a fresh one owned by ``owner`` otherwise
        owner: admin account for every component
        clock: unix-seconds source shared by all components
        transport: bridge transport (an InMemoryTransport when None)
    """
    config = config or PerpXConfig()
    config.validate()
    owner = normalize_address(owner)
    clock = clock or (lambda: int(time.time()))
    price_feed = price_feed or PriceFeed(owner, clock=clock)

    ledger = PositionLedger(
        price_feed,
        FeeEngine(),
        owner=owner,
        limits=LedgerLimits(
            max_balance=config.ledger.max_balance,
            max_exposure=config.ledger.max_exposure,
        ),
        clock=clock,
        max_price_age=config.ledger.max_price_age,
    )
    for market in config.markets:
        ledger.add_market(
            market.symbol,
            owner,
            max_leverage=market.max_leverage,
            maintenance_margin_bps=market.maintenance_margin_bps,
            active=market.active,
        )

    randomizer = None
    randomness_source = None
    if config.randomizer.enabled:
        coordinator = contract_address("perpx.randomness-coordinator")
        randomness_source = QueuedRandomnessSource(coordinator)
        randomizer = FairnessRandomizer(
            owner,
            coordinator,
            source=randomness_source,
            refresh_interval=config.randomizer.refresh_interval_seconds,
            clock=clock,
        )
        randomizer.authorize(ledger.address, owner)
        ledger.set_randomizer(randomizer, owner)

    interval_trigger = IntervalLiquidationTrigger(ledger, config.automation.interval_seconds, clock=clock)
    event_trigger = None
    if config.automation.event_trigger:
        event_trigger = EventLiquidationTrigger(ledger, config.automation.event_cooldown_seconds, clock=clock)
    manual_trigger = ManualLiquidationTrigger(ledger, owner, clock=clock)

    protocol = Protocol(
        config=config,
        owner=owner,
        price_feed=price_feed,
        ledger=ledger,
        interval_trigger=interval_trigger,
        manual_trigger=manual_trigger,
        event_trigger=event_trigger,
        randomizer=randomizer,
        randomness_source=randomness_source,
    )

    if config.bridge.enabled:
        chain = ChainSelector[config.bridge.chain]
        transport = transport or InMemoryTransport()
        settlement_token = BridgeTokenConfig(
            symbol=config.bridge.settlement_token,
            address=config.bridge.settlement_token_address,
            decimals=config.bridge.settlement_decimals,
        )
        pool = PoolManager(price_feed, ledger, settlement_token, owner, optimistic=config.bridge.optimistic)
        bridge = CrossChainManager(chain, transport, owner, fee_token=config.bridge.fee_token)

        ledger.set_pool_manager(pool.address, owner)
        pool.set_cross_chain_manager(bridge.address, owner)
        bridge.set_pool_manager(pool, owner)
        transport.register_receiver(chain, bridge.address, bridge.receive)

        protocol.transport = transport
        protocol.pool_manager = pool
        protocol.bridge = bridge

    logger.info(
        "Protocol ready: %d markets, randomizer %s, bridge %s",
        ledger.market_count,
        "on" if randomizer else "off",
        config.bridge.chain if config.bridge.enabled else "off",
    )
    return protocol
