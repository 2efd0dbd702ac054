"""
PerpX Bridge Settlement

Moves user deposits from an origin chain onto the ledger's chain.

Origin side (CrossChainManager.deposit):
  - Take the asset into custody
  - Pay the transport fee from the manager's fee-token balance
  - Send abi.encode(user, token, amount, nonce) plus the asset

Destination side (CrossChainManager.receive -> PoolManager.settle_deposit):
  - Only allow-listed source chains and senders
  - Each message id credits the ledger at most once
  - Delivered asset amount is authoritative; non-settlement tokens are
    valued through the price feed
  - Optimistic mode credits before the asset lands and reconciles later

Every check runs before the ledger is credited; a rejected message
changes nothing.
"""

from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Set, Tuple

from ..constants import (
    BRIDGE_FEE_TOKEN,
    NATIVE_DECIMALS,
    NATIVE_PRICE_SYMBOL,
    PRICE_DECIMALS,
    USD_DECIMALS,
    from_units,
)
from ..crypto.hashing import contract_address, normalize_address
from ..exceptions import (
    AssetNotDeliveredError,
    AuthorizationError,
    BridgeError,
    BridgeNotConfiguredError,
    InsufficientBalanceError,
    InsufficientFeeBalanceError,
    InvalidAmountError,
    PerpXException,
    UnauthorizedSourceError,
    UnsupportedAssetError,
)
from ..exchange.oracle import PriceFeed
from ..exchange.perpetual import PositionLedger
from ..logger import get_logger
from .transport import BridgeTransport
from .types import (
    CHAIN_NAMES,
    BridgeMessage,
    BridgeTokenConfig,
    ChainSelector,
    DepositPayload,
    ReceivedMessage,
    SettlementReceipt,
    TokenAmount,
)

logger = get_logger(__name__)


# ══════════════════════════════════════════════════════════════════════
#  DESTINATION POOL
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PendingSettlement:
    """An optimistic credit whose asset has not arrived yet."""
    message_id: str
    user: str
    token: str
    amount: int
    credited: int


class PoolManager:
    """
    Destination-chain pool that converts bridged assets into ledger credit.

    The pool is the only account allowed to call
    ``PositionLedger.deposit_usdc_for_user``. Payloads name the token by its
    origin-chain address; ``map_origin_token`` says which local token that
    address arrives as. An unmapped origin address is taken to be deployed
    at the same address on both chains.
    """

    def __init__(
        self,
        price_feed: PriceFeed,
        ledger: PositionLedger,
        settlement_token: BridgeTokenConfig,
        owner: str,
        optimistic: bool = True,
        address: Optional[str] = None,
    ):
        self.price_feed = price_feed
        self.ledger = ledger
        self.settlement_token = settlement_token
        self.owner = normalize_address(owner)
        self.optimistic = optimistic
        self.address = normalize_address(address) if address else contract_address("perpx.pool")
        self.cross_chain_manager: Optional[str] = None

        self._tokens: Dict[str, BridgeTokenConfig] = {settlement_token.address: settlement_token}
        self._origin_tokens: Dict[Tuple[ChainSelector, str], str] = {}
        self._receipts: Dict[str, SettlementReceipt] = {}
        self._pending: Dict[str, PendingSettlement] = {}
        self._parked: Dict[str, TokenAmount] = {}
        self.reserves: Dict[str, int] = {}
        self.native_reserve = 0

    # -- Admin --------------------------------------------------------------

    def set_cross_chain_manager(self, address: str, sender: str) -> None:
        self._only_owner(sender)
        self.cross_chain_manager = normalize_address(address)
        logger.info("Cross-chain manager set: %s", self.cross_chain_manager)

    def register_token(self, config: BridgeTokenConfig, sender: str) -> None:
        self._only_owner(sender)
        if config.address != self.settlement_token.address and not config.price_symbol:
            raise UnsupportedAssetError(f"{config.symbol} needs a price symbol")
        self._tokens[config.address] = config
        logger.info("Bridge token registered: %s (%s)", config.symbol, config.address)

    def map_origin_token(self, source_chain: ChainSelector, origin_token: str, token: str, sender: str) -> None:
        """Record that ``origin_token`` on ``source_chain`` arrives here as ``token``."""
        self._only_owner(sender)
        token = normalize_address(token)
        if token not in self._tokens:
            raise UnsupportedAssetError(f"Unsupported token: {token}")
        self._origin_tokens[(source_chain, normalize_address(origin_token))] = token
        logger.info(
            "Origin token mapped: %s on %s -> %s",
            origin_token, CHAIN_NAMES[source_chain], self._tokens[token].symbol,
        )

    def set_optimistic(self, optimistic: bool, sender: str) -> None:
        self._only_owner(sender)
        self.optimistic = optimistic

    # -- Settlement ---------------------------------------------------------

    def settle_deposit(
        self,
        sender: str,
        message_id: str,
        source_chain: ChainSelector,
        payload: DepositPayload,
        delivered: Optional[TokenAmount] = None,
    ) -> SettlementReceipt:
        """
        Credit a bridged deposit to the ledger.

        Args:
            sender: must be the cross-chain manager
            message_id: transport message id, the idempotency key
            source_chain: chain the deposit was made on
            payload: decoded deposit instruction (origin token address)
            delivered: asset that arrived with the message, if any

        Returns:
            SettlementReceipt; ``duplicate=True`` (and nothing credited) for
            a message id that was already settled

        Raises:
            AuthorizationError, UnsupportedAssetError, AssetNotDeliveredError,
            BridgeError on token mismatch or a second asset leg, plus any
            ledger or oracle error
        """
        if self.cross_chain_manager is None or normalize_address(sender) != self.cross_chain_manager:
            raise AuthorizationError("Only cross-chain manager can settle deposits")

        if message_id in self._receipts:
            logger.warning("Duplicate delivery of %s ignored", message_id[:18])
            return SettlementReceipt(
                message_id=message_id,
                user=payload.user,
                credited_amount=0,
                duplicate=True,
                asset_settled=self._receipts[message_id].asset_settled,
            )

        token = self.resolve_token(source_chain, payload.token)
        config = self._tokens.get(token)
        if config is None:
            raise UnsupportedAssetError(f"Unsupported token: {payload.token}")

        parked = self._parked.get(message_id)
        if delivered is not None and parked is not None:
            raise BridgeError(f"Asset for {message_id} delivered twice")
        asset = delivered or parked
        if asset is not None:
            if asset.token != token:
                raise BridgeError(f"Delivered token {asset.token} does not match expected token {token}")
            amount = asset.amount
        elif self.optimistic:
            amount = payload.amount
        else:
            raise AssetNotDeliveredError(f"No asset delivered with {message_id}")

        credit = self.to_settlement_units(config, amount)
        if credit <= 0:
            raise InvalidAmountError("Deposit too small to credit")

        # --- commit (ledger first: its checks are the last that can fail) ---
        self.ledger.deposit_usdc_for_user(self.address, payload.user, credit)

        if asset is not None:
            self._add_reserve(asset.token, asset.amount)
            self._parked.pop(message_id, None)
        else:
            self._pending[message_id] = PendingSettlement(
                message_id=message_id, user=payload.user, token=token, amount=amount, credited=credit,
            )

        receipt = SettlementReceipt(
            message_id=message_id,
            user=payload.user,
            credited_amount=credit,
            asset_settled=asset is not None,
        )
        self._receipts[message_id] = receipt
        logger.info(
            "Deposit settled: %s credited $%s for %s %s%s",
            payload.user, from_units(credit), amount, config.symbol,
            "" if asset is not None else " (asset pending)",
        )
        return receipt

    def reconcile_asset(self, sender: str, message_id: str, token: str, amount: int) -> bool:
        """
        Record the asset leg of a transfer.

        Matches an optimistic credit when the message already arrived;
        otherwise parks the asset until the message is settled. The arrived
        amount decides the final credit: any surplus is credited and any
        shortfall debited from the user's free balance. A shortfall the
        free balance cannot cover raises and leaves the credit pending.

        Returns:
            True when a pending credit was settled, False when parked
        """
        if self.cross_chain_manager is None or normalize_address(sender) != self.cross_chain_manager:
            raise AuthorizationError("Only cross-chain manager can reconcile assets")
        asset = TokenAmount(token=token, amount=amount)

        pending = self._pending.get(message_id)
        if pending is None:
            if message_id in self._receipts:
                raise BridgeError(f"Asset for {message_id} already settled")
            if message_id in self._parked:
                raise BridgeError(f"Asset for {message_id} already parked")
            self._parked[message_id] = asset
            logger.info("Asset for %s parked until message arrives", message_id[:18])
            return False

        if asset.token != pending.token:
            raise BridgeError(f"Reconciled token {asset.token} does not match {pending.token}")

        actual = self.to_settlement_units(self._tokens[pending.token], asset.amount)
        delta = actual - pending.credited
        if delta > 0:
            self.ledger.deposit_usdc_for_user(self.address, pending.user, delta)
        elif delta < 0:
            try:
                self.ledger.debit_usdc_for_user(self.address, pending.user, -delta)
            except InsufficientBalanceError:
                logger.error(
                    "Asset for %s is $%s short and %s cannot cover it; credit stays pending",
                    message_id[:18], from_units(-delta), pending.user,
                )
                raise
        if delta:
            logger.warning(
                "Asset for %s differs from optimistic credit: $%s -> $%s",
                message_id[:18], from_units(pending.credited), from_units(actual),
            )

        del self._pending[message_id]
        self._add_reserve(asset.token, asset.amount)
        self._receipts[message_id] = replace(
            self._receipts[message_id], credited_amount=actual, asset_settled=True,
        )
        logger.info("Asset reconciled for %s", message_id[:18])
        return True

    def deposit_native(self, sender: str, value: int) -> int:
        """
        Direct native-asset deposit on this chain, valued via the oracle.

        Returns:
            The USD amount credited
        """
        if value <= 0:
            raise InvalidAmountError("Amount must be greater than 0")
        price, _ = self.price_feed.get_price(NATIVE_PRICE_SYMBOL)
        credit = value * price // 10 ** (NATIVE_DECIMALS + PRICE_DECIMALS - USD_DECIMALS)
        if credit <= 0:
            raise InvalidAmountError("Deposit too small to credit")

        self.ledger.deposit_usdc_for_user(self.address, sender, credit)
        self.native_reserve += value
        logger.info("Native deposit: %s credited $%s", normalize_address(sender), from_units(credit))
        return credit

    # -- Reads --------------------------------------------------------------

    def to_settlement_units(self, config: BridgeTokenConfig, amount: int) -> int:
        """Convert a token amount into 6-decimal USD (truncating)."""
        if config.address == self.settlement_token.address:
            if config.decimals >= USD_DECIMALS:
                return amount // 10 ** (config.decimals - USD_DECIMALS)
            return amount * 10 ** (USD_DECIMALS - config.decimals)

        if not config.price_symbol:
            raise UnsupportedAssetError(f"No price symbol for {config.symbol}")
        price, _ = self.price_feed.get_price(config.price_symbol)
        shift = config.decimals + PRICE_DECIMALS - USD_DECIMALS
        if shift >= 0:
            return amount * price // 10 ** shift
        return amount * price * 10 ** -shift

    def resolve_token(self, source_chain: ChainSelector, origin_token: str) -> str:
        """Local address of the token deposited as ``origin_token`` on ``source_chain``."""
        origin_token = normalize_address(origin_token)
        return self._origin_tokens.get((source_chain, origin_token), origin_token)

    def is_supported(self, token: str) -> bool:
        return normalize_address(token) in self._tokens

    def get_receipt(self, message_id: str) -> Optional[SettlementReceipt]:
        return self._receipts.get(message_id)

    def pending_settlements(self) -> List[PendingSettlement]:
        return list(self._pending.values())

    def _add_reserve(self, token: str, amount: int) -> None:
        self.reserves[token] = self.reserves.get(token, 0) + amount

    def _only_owner(self, sender: str) -> None:
        if normalize_address(sender) != self.owner:
            raise AuthorizationError("Only owner can configure the pool")


# ══════════════════════════════════════════════════════════════════════
#  CROSS-CHAIN MANAGER
# ══════════════════════════════════════════════════════════════════════

class CrossChainManager:
    """
    Bridge endpoint deployed on every chain.

    On an origin chain it takes deposits and sends them; on the ledger's
    chain it receives messages and hands them to the PoolManager.
    """

    def __init__(
        self,
        chain: ChainSelector,
        transport: BridgeTransport,
        owner: str,
        fee_token: str = BRIDGE_FEE_TOKEN,
        address: Optional[str] = None,
    ):
        self.chain = chain
        self.transport = transport
        self.owner = normalize_address(owner)
        self.fee_token = fee_token
        self.address = normalize_address(address) if address else contract_address(f"perpx.bridge.{chain.name}")

        self._supported_tokens: Dict[str, str] = {}
        self._destinations: Dict[ChainSelector, str] = {}
        self._sources: Dict[ChainSelector, Set[str]] = {}
        self.pool_manager: Optional[PoolManager] = None

        self.custody: Dict[str, int] = {}
        self.fee_balance = 0
        self._nonce = 0
        self.sent: Dict[str, DepositPayload] = {}

    # -- Admin --------------------------------------------------------------

    def add_supported_token(self, token: str, symbol: str, sender: str) -> None:
        self._only_owner(sender)
        self._supported_tokens[normalize_address(token)] = symbol

    def allowlist_destination(self, chain: ChainSelector, receiver: str, sender: str) -> None:
        self._only_owner(sender)
        self._destinations[chain] = normalize_address(receiver)
        logger.info("Destination allow-listed: %s -> %s", CHAIN_NAMES[chain], receiver)

    def allowlist_source(self, chain: ChainSelector, source_sender: str, sender: str) -> None:
        self._only_owner(sender)
        self._sources.setdefault(chain, set()).add(normalize_address(source_sender))
        logger.info("Source allow-listed: %s / %s", CHAIN_NAMES[chain], source_sender)

    def set_pool_manager(self, pool_manager: PoolManager, sender: str) -> None:
        self._only_owner(sender)
        self.pool_manager = pool_manager

    def fund_fees(self, amount: int) -> int:
        if amount <= 0:
            raise InvalidAmountError("Amount must be greater than 0")
        self.fee_balance += amount
        return self.fee_balance

    # -- Origin -------------------------------------------------------------

    def get_fee_quote(self, dest_chain: ChainSelector, token: str, amount: int) -> int:
        receiver = self._require_destination(dest_chain)
        payload = DepositPayload(user=self.address, token=normalize_address(token), amount=amount, nonce=self._nonce + 1)
        return self.transport.get_fee(dest_chain, self._build_message(receiver, payload))

    def deposit(self, sender: str, dest_chain: ChainSelector, token: str, amount: int) -> str:
        """
        Bridge ``amount`` of ``token`` to the ledger chain for ``sender``.

        Returns:
            The transport message id

        Raises:
            InvalidAmountError, UnsupportedAssetError, BridgeNotConfiguredError,
            InsufficientFeeBalanceError
        """
        user = normalize_address(sender)
        token = normalize_address(token)
        if amount <= 0:
            raise InvalidAmountError("Amount must be greater than 0")
        if token not in self._supported_tokens:
            raise UnsupportedAssetError(f"Unsupported token: {token}")
        receiver = self._require_destination(dest_chain)

        payload = DepositPayload(user=user, token=token, amount=amount, nonce=self._nonce + 1)
        message = self._build_message(receiver, payload)
        fee = self.transport.get_fee(dest_chain, message)
        if self.fee_balance < fee:
            raise InsufficientFeeBalanceError(
                f"Insufficient {self.fee_token} for fees: {self.fee_balance} < {fee}"
            )

        message_id = self.transport.send(self.chain, dest_chain, message, self.address)
        self._nonce += 1
        self.fee_balance -= fee
        self.custody[token] = self.custody.get(token, 0) + amount
        self.sent[message_id] = payload

        logger.info(
            "Deposit sent: %s %d %s to %s (message %s, fee %d %s)",
            user, amount, self._supported_tokens[token], CHAIN_NAMES[dest_chain],
            message_id[:18], fee, self.fee_token,
        )
        return message_id

    # -- Destination --------------------------------------------------------

    def receive(self, message: ReceivedMessage) -> SettlementReceipt:
        """Transport callback on the ledger chain."""
        try:
            allowed = self._sources.get(message.source_chain, set())
            if normalize_address(message.sender) not in allowed:
                raise UnauthorizedSourceError(
                    f"Sender {message.sender} on {message.source_chain.name} not allow-listed"
                )
            if self.pool_manager is None:
                raise BridgeNotConfiguredError("Pool manager not set")

            payload = DepositPayload.decode(message.data)
            return self.pool_manager.settle_deposit(
                self.address, message.message_id, message.source_chain, payload, message.delivered,
            )
        except PerpXException as e:
            logger.error("Bridge message %s rejected: %s", message.message_id[:18], e)
            raise

    def reconcile_asset(self, sender: str, message_id: str, token: str, amount: int) -> bool:
        """Forward a late asset leg to the pool. Operator only."""
        self._only_owner(sender)
        if self.pool_manager is None:
            raise BridgeNotConfiguredError("Pool manager not set")
        return self.pool_manager.reconcile_asset(self.address, message_id, token, amount)

    # -- Helpers ------------------------------------------------------------

    def _build_message(self, receiver: str, payload: DepositPayload) -> BridgeMessage:
        return BridgeMessage(
            receiver=receiver,
            data=payload.encode(),
            token_amounts=(TokenAmount(token=payload.token, amount=payload.amount),),
            fee_token=self.fee_token,
        )

    def _require_destination(self, chain: ChainSelector) -> str:
        receiver = self._destinations.get(chain)
        if receiver is None:
            raise BridgeNotConfiguredError(f"Destination {CHAIN_NAMES[chain]} not allow-listed")
        return receiver

    def _only_owner(self, sender: str) -> None:
        if normalize_address(sender) != self.owner:
            raise AuthorizationError("Only owner can configure the bridge")
