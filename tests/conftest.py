"""
Shared fixtures for the PerpX test suite.

Addresses are all-digit hex so their checksum form equals the literal.
"""

import pytest

from perpx.exchange.oracle import PriceFeed, StaticPriceSource
from perpx.exchange.perpetual import PositionLedger

OWNER = "0x" + "11" * 20
ALICE = "0x" + "22" * 20
BOB = "0x" + "33" * 20
CAROL = "0x" + "44" * 20
POOL = "0x" + "55" * 20

USD = 10 ** 6
PRICE = 10 ** 8
DAY = 86_400
T0 = 1_700_000_000


class ManualClock:
    """Unix-seconds clock that only moves when told to."""

    def __init__(self, start: int = T0):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def btc_source(clock):
    return StaticPriceSource(50_000 * PRICE, clock=clock)


@pytest.fixture
def eth_source(clock):
    return StaticPriceSource(3_000 * PRICE, clock=clock)


@pytest.fixture
def feed(clock, btc_source, eth_source):
    feed = PriceFeed(OWNER, clock=clock)
    feed.set_price_feed("BTC/USD", btc_source, OWNER)
    feed.set_price_feed("ETH/USD", eth_source, OWNER)
    return feed


@pytest.fixture
def ledger(feed, clock):
    ledger = PositionLedger(feed, owner=OWNER, clock=clock)
    ledger.add_market("BTC/USD", OWNER)
    ledger.add_market("ETH/USD", OWNER)
    return ledger
