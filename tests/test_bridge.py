"""
Tests for PerpX cross-chain deposit settlement.

An origin CrossChainManager on Sepolia sends deposits through the
in-memory transport to the ledger chain (Fuji), where the PoolManager
credits the PositionLedger.
"""

import pytest

from perpx.bridge.settlement import CrossChainManager
from perpx.bridge.types import (
    BridgeTokenConfig,
    ChainSelector,
    DepositPayload,
    TokenAmount,
)
from perpx.config.loader import PerpXConfig
from perpx.crypto.hashing import normalize_address
from perpx.exceptions import (
    AssetNotDeliveredError,
    AuthorizationError,
    BalanceCapExceededError,
    BridgeError,
    BridgeNotConfiguredError,
    InsufficientBalanceError,
    InsufficientFeeBalanceError,
    InvalidAmountError,
    UnauthorizedSourceError,
    UnsupportedAssetError,
    ValidationError,
)
from perpx.exchange.hooks import Withdrawn
from perpx.exchange.oracle import StaticPriceSource
from perpx.protocol import build_protocol

from conftest import ALICE, BOB, OWNER, PRICE, USD

FUJI = ChainSelector.AVALANCHE_FUJI
SEPOLIA = ChainSelector.ETHEREUM_SEPOLIA

USDC = normalize_address(PerpXConfig().bridge.settlement_token_address)
WETH = "0x" + "12" * 20
OTHER_TOKEN = "0x" + "66" * 20
SEPOLIA_USDC = "0x" + "77" * 20
LINK = 10 ** 18


@pytest.fixture
def protocol(feed, clock):
    return build_protocol(PerpXConfig(), price_feed=feed, owner=OWNER, clock=clock)


@pytest.fixture
def origin(protocol):
    origin = protocol.add_origin_chain(SEPOLIA, USDC)
    origin.fund_fees(LINK)
    return origin


# ============================================================================
#  HAPPY PATH
# ============================================================================

class TestDeposit:

    def test_deposit_credits_ledger(self, protocol, origin):
        message_id = origin.deposit(ALICE, FUJI, USDC, 25 * USD)
        receipts = protocol.transport.deliver_all()

        assert len(receipts) == 1
        receipt = receipts[0]
        assert receipt.message_id == message_id
        assert receipt.user == ALICE
        assert receipt.credited_amount == 25 * USD
        assert receipt.asset_settled
        assert not receipt.duplicate
        assert protocol.ledger.get_balance(ALICE) == 25 * USD
        assert protocol.pool_manager.reserves == {USDC: 25 * USD}
        assert protocol.transport.pending == []

    def test_origin_takes_custody_and_pays_fee(self, protocol, origin):
        quote = origin.get_fee_quote(FUJI, USDC, 25 * USD)
        origin.deposit(ALICE, FUJI, USDC, 25 * USD)
        assert origin.custody == {USDC: 25 * USD}
        assert origin.fee_balance == LINK - quote

    def test_fee_quote(self, origin):
        # four ABI words of payload plus one token leg
        assert origin.get_fee_quote(FUJI, USDC, 25 * USD) == 10 ** 16 + 10 ** 13 * (128 + 64)

    def test_identical_deposits_stay_distinct(self, protocol, origin):
        first = origin.deposit(ALICE, FUJI, USDC, 10 * USD)
        second = origin.deposit(ALICE, FUJI, USDC, 10 * USD)
        assert first != second
        assert origin.sent[first].nonce == 1
        assert origin.sent[second].nonce == 2

        protocol.transport.deliver_all()
        assert protocol.ledger.get_balance(ALICE) == 20 * USD

    def test_sender_is_the_credited_user(self, protocol, origin):
        origin.deposit(BOB, FUJI, USDC, 5 * USD)
        protocol.transport.deliver_all()
        assert protocol.ledger.get_balance(BOB) == 5 * USD
        assert protocol.ledger.get_balance(ALICE) == 0


# ============================================================================
#  IDEMPOTENCY
# ============================================================================

class TestRedelivery:

    def test_redelivery_credits_once(self, protocol, origin):
        message_id = origin.deposit(ALICE, FUJI, USDC, 25 * USD)
        protocol.transport.deliver(message_id)

        receipt = protocol.transport.redeliver(message_id)
        assert receipt.duplicate
        assert receipt.credited_amount == 0
        assert protocol.ledger.get_balance(ALICE) == 25 * USD
        assert protocol.pool_manager.reserves == {USDC: 25 * USD}
        assert protocol.transport.delivery_count == 2

    def test_failed_delivery_stays_queued(self, protocol, origin):
        message_id = origin.deposit(ALICE, FUJI, USDC, 150 * USD)
        with pytest.raises(BalanceCapExceededError):
            protocol.transport.deliver(message_id)

        assert protocol.transport.pending == [message_id]
        assert protocol.pool_manager.get_receipt(message_id) is None
        assert protocol.pool_manager.reserves == {}
        assert protocol.ledger.get_balance(ALICE) == 0

    def test_unknown_message(self, protocol):
        with pytest.raises(BridgeError, match="Unknown message"):
            protocol.transport.deliver("0x" + "00" * 32)


# ============================================================================
#  REJECTIONS
# ============================================================================

class TestOriginValidation:

    def test_zero_amount(self, origin):
        with pytest.raises(InvalidAmountError):
            origin.deposit(ALICE, FUJI, USDC, 0)

    def test_unsupported_token(self, origin):
        with pytest.raises(UnsupportedAssetError):
            origin.deposit(ALICE, FUJI, OTHER_TOKEN, USD)

    def test_destination_not_allowlisted(self, origin):
        with pytest.raises(BridgeNotConfiguredError):
            origin.deposit(ALICE, SEPOLIA, USDC, USD)

    def test_insufficient_fee_balance(self, protocol):
        origin = protocol.add_origin_chain(SEPOLIA, USDC)
        with pytest.raises(InsufficientFeeBalanceError):
            origin.deposit(ALICE, FUJI, USDC, USD)
        assert origin.custody == {}
        assert origin.sent == {}
        assert protocol.transport.pending == []

    def test_non_owner_cannot_configure(self, origin):
        with pytest.raises(AuthorizationError):
            origin.add_supported_token(OTHER_TOKEN, "XYZ", ALICE)

    def test_fund_fees_positive(self, origin):
        with pytest.raises(InvalidAmountError):
            origin.fund_fees(0)


class TestDestinationValidation:

    def test_unknown_source_rejected(self, protocol):
        rogue = CrossChainManager(SEPOLIA, protocol.transport, OWNER, address="0x" + "88" * 20)
        rogue.add_supported_token(USDC, "USDC", OWNER)
        rogue.allowlist_destination(FUJI, protocol.bridge.address, OWNER)
        rogue.fund_fees(LINK)

        message_id = rogue.deposit(ALICE, FUJI, USDC, 10 * USD)
        with pytest.raises(UnauthorizedSourceError):
            protocol.transport.deliver(message_id)
        assert protocol.ledger.get_balance(ALICE) == 0

    def test_token_unknown_to_pool(self, protocol, origin):
        origin.add_supported_token(OTHER_TOKEN, "XYZ", OWNER)
        message_id = origin.deposit(ALICE, FUJI, OTHER_TOKEN, USD)
        with pytest.raises(UnsupportedAssetError):
            protocol.transport.deliver(message_id)
        assert protocol.pool_manager.get_receipt(message_id) is None

    def test_only_bridge_settles(self, protocol):
        payload = DepositPayload(user=ALICE, token=USDC, amount=USD, nonce=1)
        with pytest.raises(AuthorizationError):
            protocol.pool_manager.settle_deposit(OWNER, "0x01", SEPOLIA, payload)


# ============================================================================
#  OPTIMISTIC SETTLEMENT
# ============================================================================

class TestOptimisticSettlement:

    def test_credit_before_asset(self, protocol, origin):
        message_id = origin.deposit(ALICE, FUJI, USDC, 25 * USD)
        receipt = protocol.transport.deliver(message_id, with_assets=False)

        assert not receipt.asset_settled
        assert protocol.ledger.get_balance(ALICE) == 25 * USD
        assert protocol.pool_manager.reserves == {}
        [pending] = protocol.pool_manager.pending_settlements()
        assert pending.message_id == message_id

        assert protocol.bridge.reconcile_asset(OWNER, message_id, USDC, 25 * USD)
        assert protocol.pool_manager.pending_settlements() == []
        assert protocol.pool_manager.reserves == {USDC: 25 * USD}
        assert protocol.pool_manager.get_receipt(message_id).asset_settled

    def test_asset_before_message(self, protocol, origin):
        message_id = origin.deposit(ALICE, FUJI, USDC, 25 * USD)
        assert not protocol.bridge.reconcile_asset(OWNER, message_id, USDC, 25 * USD)

        receipt = protocol.transport.deliver(message_id, with_assets=False)
        assert receipt.asset_settled
        assert protocol.ledger.get_balance(ALICE) == 25 * USD
        assert protocol.pool_manager.reserves == {USDC: 25 * USD}

    def test_reconcile_twice(self, protocol, origin):
        message_id = origin.deposit(ALICE, FUJI, USDC, 25 * USD)
        protocol.transport.deliver(message_id)
        with pytest.raises(BridgeError, match="already settled"):
            protocol.bridge.reconcile_asset(OWNER, message_id, USDC, 25 * USD)

    def test_reconcile_wrong_token(self, protocol, origin):
        message_id = origin.deposit(ALICE, FUJI, USDC, 25 * USD)
        protocol.transport.deliver(message_id, with_assets=False)
        with pytest.raises(BridgeError):
            protocol.bridge.reconcile_asset(OWNER, message_id, OTHER_TOKEN, 25 * USD)

    def test_reconcile_owner_only(self, protocol, origin):
        message_id = origin.deposit(ALICE, FUJI, USDC, 25 * USD)
        with pytest.raises(AuthorizationError):
            protocol.bridge.reconcile_asset(ALICE, message_id, USDC, 25 * USD)

    def test_strict_mode_requires_asset(self, protocol, origin):
        protocol.pool_manager.set_optimistic(False, OWNER)
        message_id = origin.deposit(ALICE, FUJI, USDC, 25 * USD)
        with pytest.raises(AssetNotDeliveredError):
            protocol.transport.deliver(message_id, with_assets=False)
        assert protocol.ledger.get_balance(ALICE) == 0

        protocol.transport.deliver(message_id)
        assert protocol.ledger.get_balance(ALICE) == 25 * USD


class TestAssetReconciliation:

    def _optimistic(self, protocol, origin, amount=25 * USD):
        message_id = origin.deposit(ALICE, FUJI, USDC, amount)
        protocol.transport.deliver(message_id, with_assets=False)
        return message_id

    def test_surplus_credited(self, protocol, origin):
        message_id = self._optimistic(protocol, origin)
        assert protocol.bridge.reconcile_asset(OWNER, message_id, USDC, 30 * USD)
        assert protocol.ledger.get_balance(ALICE) == 30 * USD
        assert protocol.pool_manager.reserves == {USDC: 30 * USD}
        assert protocol.pool_manager.get_receipt(message_id).credited_amount == 30 * USD

    def test_shortfall_debited(self, protocol, origin):
        message_id = self._optimistic(protocol, origin)
        assert protocol.bridge.reconcile_asset(OWNER, message_id, USDC, 10 * USD)
        assert protocol.ledger.get_balance(ALICE) == 10 * USD
        assert protocol.pool_manager.reserves == {USDC: 10 * USD}
        assert protocol.pool_manager.get_receipt(message_id).credited_amount == 10 * USD
        assert protocol.ledger.bus.events_of(Withdrawn)[-1].amount == 15 * USD

    def test_uncovered_shortfall_stays_pending(self, protocol, origin):
        message_id = self._optimistic(protocol, origin)
        protocol.ledger.open_position(ALICE, "BTC/USD", 20 * USD, 1, True)
        balance = protocol.ledger.get_balance(ALICE)
        assert balance == 4_800_000

        with pytest.raises(InsufficientBalanceError):
            protocol.bridge.reconcile_asset(OWNER, message_id, USDC, 10 * USD)
        assert protocol.ledger.get_balance(ALICE) == balance
        assert protocol.pool_manager.reserves == {}
        assert [p.message_id for p in protocol.pool_manager.pending_settlements()] == [message_id]
        assert not protocol.pool_manager.get_receipt(message_id).asset_settled

    def test_parked_and_delivered_asset_rejected(self, protocol, origin):
        message_id = origin.deposit(ALICE, FUJI, USDC, 25 * USD)
        protocol.bridge.reconcile_asset(OWNER, message_id, USDC, 25 * USD)
        with pytest.raises(BridgeError, match="delivered twice"):
            protocol.transport.deliver(message_id)
        assert protocol.ledger.get_balance(ALICE) == 0
        assert protocol.pool_manager.reserves == {}

        protocol.transport.deliver(message_id, with_assets=False)
        assert protocol.ledger.get_balance(ALICE) == 25 * USD
        assert protocol.pool_manager.reserves == {USDC: 25 * USD}


class TestOriginTokenMapping:

    @pytest.fixture
    def sepolia(self, protocol):
        origin = protocol.add_origin_chain(SEPOLIA, SEPOLIA_USDC)
        origin.fund_fees(LINK)
        return origin

    def test_origin_address_settles_as_local_token(self, protocol, sepolia):
        message_id = sepolia.deposit(ALICE, FUJI, SEPOLIA_USDC, 25 * USD)
        assert protocol.transport.get_message(message_id).delivered.token == USDC
        assert sepolia.sent[message_id].token == normalize_address(SEPOLIA_USDC)

        [receipt] = protocol.transport.deliver_all()
        assert receipt.credited_amount == 25 * USD
        assert protocol.ledger.get_balance(ALICE) == 25 * USD
        assert protocol.pool_manager.reserves == {USDC: 25 * USD}
        assert sepolia.custody == {normalize_address(SEPOLIA_USDC): 25 * USD}

    def test_late_asset_uses_local_token(self, protocol, sepolia):
        message_id = sepolia.deposit(ALICE, FUJI, SEPOLIA_USDC, 25 * USD)
        protocol.transport.deliver(message_id, with_assets=False)
        assert protocol.bridge.reconcile_asset(OWNER, message_id, USDC, 25 * USD)
        assert protocol.pool_manager.reserves == {USDC: 25 * USD}

    def test_resolve_token(self, protocol, sepolia):
        pool = protocol.pool_manager
        assert pool.resolve_token(SEPOLIA, SEPOLIA_USDC) == USDC
        assert pool.resolve_token(SEPOLIA, OTHER_TOKEN) == normalize_address(OTHER_TOKEN)

    def test_delivered_token_must_match_mapping(self, protocol, origin):
        protocol.pool_manager.map_origin_token(SEPOLIA, OTHER_TOKEN, USDC, OWNER)
        origin.add_supported_token(OTHER_TOKEN, "XYZ", OWNER)
        message_id = origin.deposit(ALICE, FUJI, OTHER_TOKEN, USD)
        with pytest.raises(BridgeError, match="does not match"):
            protocol.transport.deliver(message_id)
        assert protocol.ledger.get_balance(ALICE) == 0

    def test_mapping_needs_registered_token(self, protocol):
        with pytest.raises(UnsupportedAssetError):
            protocol.pool_manager.map_origin_token(SEPOLIA, SEPOLIA_USDC, WETH, OWNER)


# ============================================================================
#  VALUATION
# ============================================================================

class TestValuation:

    def test_priced_token(self, protocol, origin):
        protocol.pool_manager.register_token(BridgeTokenConfig("WETH", WETH, 18, "ETH/USD"), OWNER)
        origin.add_supported_token(WETH, "WETH", OWNER)

        origin.deposit(ALICE, FUJI, WETH, 10 ** 16)
        [receipt] = protocol.transport.deliver_all()
        assert receipt.credited_amount == 30 * USD
        assert protocol.pool_manager.reserves == {normalize_address(WETH): 10 ** 16}

    def test_priced_token_needs_symbol(self, protocol):
        with pytest.raises(UnsupportedAssetError):
            protocol.pool_manager.register_token(BridgeTokenConfig("WETH", WETH, 18), OWNER)

    def test_settlement_token_rescaled(self, protocol):
        pool = protocol.pool_manager
        assert pool.to_settlement_units(BridgeTokenConfig("USDC", USDC, 18), 10 ** 18) == USD
        assert pool.to_settlement_units(BridgeTokenConfig("USDC", USDC, 2), 150) == 1_500_000

    def test_low_precision_priced_token_stays_integral(self, protocol):
        pool = protocol.pool_manager
        whole = pool.to_settlement_units(BridgeTokenConfig("WHOLE", "0x" + "13" * 20, 0, "ETH/USD"), 3)
        assert whole == 9_000 * USD
        assert isinstance(whole, int)

        tenths = pool.to_settlement_units(BridgeTokenConfig("TENTH", "0x" + "14" * 20, 1, "ETH/USD"), 15)
        assert tenths == 4_500 * USD
        assert isinstance(tenths, int)

    def test_dust_rejected(self, protocol, origin):
        protocol.pool_manager.register_token(BridgeTokenConfig("WETH", WETH, 18, "ETH/USD"), OWNER)
        origin.add_supported_token(WETH, "WETH", OWNER)
        origin.deposit(ALICE, FUJI, WETH, 1)
        with pytest.raises(InvalidAmountError):
            protocol.transport.deliver_all()

    def test_native_deposit(self, protocol, feed, clock):
        feed.set_price_feed("AVAX/USD", StaticPriceSource(25 * PRICE, clock=clock), OWNER)
        credited = protocol.pool_manager.deposit_native(ALICE, 2 * 10 ** 18)
        assert credited == 50 * USD
        assert protocol.ledger.get_balance(ALICE) == 50 * USD
        assert protocol.pool_manager.native_reserve == 2 * 10 ** 18

    def test_native_deposit_respects_cap(self, protocol, feed, clock):
        feed.set_price_feed("AVAX/USD", StaticPriceSource(25 * PRICE, clock=clock), OWNER)
        with pytest.raises(BalanceCapExceededError):
            protocol.pool_manager.deposit_native(ALICE, 5 * 10 ** 18)
        assert protocol.pool_manager.native_reserve == 0


# ============================================================================
#  TYPES
# ============================================================================

class TestBridgeTypes:

    def test_payload_decode(self):
        payload = DepositPayload(user=ALICE, token=USDC, amount=25 * USD, nonce=3)
        assert DepositPayload.decode(payload.encode()) == payload
        assert len(payload.encode()) == 128

    def test_malformed_payload(self):
        with pytest.raises(ValidationError, match="Malformed"):
            DepositPayload.decode(b"\x00")

    def test_token_amount_positive(self):
        with pytest.raises(ValidationError):
            TokenAmount(token=USDC, amount=0)

    def test_same_chain_send_rejected(self, protocol, origin):
        origin.allowlist_destination(SEPOLIA, protocol.bridge.address, OWNER)
        with pytest.raises(BridgeError, match="must differ"):
            origin.deposit(ALICE, SEPOLIA, USDC, USD)
        assert origin.fee_balance == LINK


# ============================================================================
#  PROTOCOL WIRING
# ============================================================================

class TestProtocolWiring:

    def test_components_connected(self, protocol):
        assert protocol.ledger.pool_manager == protocol.pool_manager.address
        assert protocol.pool_manager.cross_chain_manager == protocol.bridge.address
        assert protocol.bridge.pool_manager is protocol.pool_manager
        assert protocol.bridge.chain == FUJI
        assert protocol.randomizer.is_authorized(protocol.ledger.address)
        assert protocol.event_trigger is not None

    def test_markets_from_config(self, protocol):
        assert protocol.ledger.get_market_symbols() == ["BTC/USD", "ETH/USD"]

    def test_sweep_requests_randomness(self, protocol):
        protocol.manual_trigger.perform_upkeep(OWNER)
        assert len(protocol.randomness_source.requests) == 1

    def test_bridge_disabled(self, feed, clock):
        config = PerpXConfig()
        config.bridge.enabled = False
        config.randomizer.enabled = False
        protocol = build_protocol(config, price_feed=feed, owner=OWNER, clock=clock)
        assert protocol.bridge is None
        assert protocol.randomizer is None
        with pytest.raises(BridgeNotConfiguredError):
            protocol.add_origin_chain(SEPOLIA, USDC)
