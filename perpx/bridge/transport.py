"""
PerpX Bridge Transport

Abstraction over the cross-chain messaging network:
  - Fee quotes in the fee token
  - Send of a payload plus optional assets to a destination receiver
  - At-least-once delivery (a message may arrive more than once)

InMemoryTransport simulates the network in-process for tests and the CLI.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..constants import BRIDGE_BASE_FEE, BRIDGE_FEE_PER_BYTE
from ..crypto.hashing import abi_keccak256, normalize_address
from ..exceptions import BridgeError, BridgeNotConfiguredError
from ..logger import get_logger
from .types import CHAIN_NAMES, BridgeMessage, ChainSelector, ReceivedMessage, TokenAmount

logger = get_logger(__name__)

MessageHandler = Callable[[ReceivedMessage], Any]


class BridgeTransport(ABC):
    """Interface every messaging network implementation provides."""

    @abstractmethod
    def get_fee(self, dest_chain: ChainSelector, message: BridgeMessage) -> int:
        """Fee (fee-token smallest units) to send ``message`` to ``dest_chain``."""

    @abstractmethod
    def send(
        self,
        source_chain: ChainSelector,
        dest_chain: ChainSelector,
        message: BridgeMessage,
        sender: str,
    ) -> str:
        """Dispatch ``message`` and return its message id."""


class InMemoryTransport(BridgeTransport):
    """
    Queue-backed transport.

    Messages are queued on send and handed to the destination receiver on
    ``deliver`` / ``deliver_all``. ``redeliver`` replays an already
    delivered message to exercise idempotent receivers.
    """

    def __init__(self, base_fee: int = BRIDGE_BASE_FEE, fee_per_byte: int = BRIDGE_FEE_PER_BYTE):
        self.base_fee = base_fee
        self.fee_per_byte = fee_per_byte
        self._receivers: Dict[Tuple[ChainSelector, str], MessageHandler] = {}
        # (source chain, source token, dest chain) -> dest token
        self._token_routes: Dict[Tuple[ChainSelector, str, ChainSelector], str] = {}
        self._messages: Dict[str, Tuple[ChainSelector, str, ReceivedMessage]] = {}
        self._queue: List[str] = []
        self._nonce = 0
        self.delivery_count = 0

    # -- Wiring -------------------------------------------------------------

    def register_receiver(self, chain: ChainSelector, address: str, handler: MessageHandler) -> None:
        self._receivers[(chain, normalize_address(address))] = handler
        logger.info("Receiver registered on %s: %s", CHAIN_NAMES[chain], address)

    def register_token_route(
        self,
        source_chain: ChainSelector,
        source_token: str,
        dest_chain: ChainSelector,
        dest_token: str,
    ) -> None:
        """Deliver ``source_token`` sent from ``source_chain`` as ``dest_token`` on ``dest_chain``."""
        key = (source_chain, normalize_address(source_token), dest_chain)
        self._token_routes[key] = normalize_address(dest_token)
        logger.info(
            "Token route: %s on %s -> %s on %s",
            source_token, CHAIN_NAMES[source_chain], dest_token, CHAIN_NAMES[dest_chain],
        )

    # -- BridgeTransport ----------------------------------------------------

    def get_fee(self, dest_chain: ChainSelector, message: BridgeMessage) -> int:
        return self.base_fee + self.fee_per_byte * message.size

    def send(
        self,
        source_chain: ChainSelector,
        dest_chain: ChainSelector,
        message: BridgeMessage,
        sender: str,
    ) -> str:
        if source_chain == dest_chain:
            raise BridgeError("Source and destination chains must differ")

        self._nonce += 1
        message_id = '0x' + abi_keccak256(
            ["uint64", "uint64", "uint256", "address", "bytes"],
            [int(source_chain), int(dest_chain), self._nonce, message.receiver, message.data],
        ).hex()

        received = ReceivedMessage(
            message_id=message_id,
            source_chain=source_chain,
            sender=normalize_address(sender),
            data=message.data,
            token_amounts=tuple(
                TokenAmount(
                    token=self._token_routes.get((source_chain, t.token, dest_chain), t.token),
                    amount=t.amount,
                )
                for t in message.token_amounts
            ),
        )
        self._messages[message_id] = (dest_chain, normalize_address(message.receiver), received)
        self._queue.append(message_id)
        logger.info(
            "Message %s queued: %s -> %s",
            message_id[:18], CHAIN_NAMES[source_chain], CHAIN_NAMES[dest_chain],
        )
        return message_id

    # -- Delivery -----------------------------------------------------------

    @property
    def pending(self) -> List[str]:
        return list(self._queue)

    def get_message(self, message_id: str) -> Optional[ReceivedMessage]:
        entry = self._messages.get(message_id)
        return entry[2] if entry else None

    def deliver(self, message_id: str, with_assets: bool = True) -> Any:
        """
        Deliver one message to its receiver.

        With ``with_assets=False`` the payload arrives without its tokens,
        as when the asset leg of a transfer lags the message.
        A receiver exception propagates and leaves the message queued.
        """
        entry = self._messages.get(message_id)
        if entry is None:
            raise BridgeError(f"Unknown message: {message_id}")
        dest_chain, receiver, received = entry

        handler = self._receivers.get((dest_chain, receiver))
        if handler is None:
            raise BridgeNotConfiguredError(
                f"No receiver {receiver} on {CHAIN_NAMES[dest_chain]}"
            )

        if not with_assets:
            received = ReceivedMessage(
                message_id=received.message_id,
                source_chain=received.source_chain,
                sender=received.sender,
                data=received.data,
            )

        result = handler(received)
        self.delivery_count += 1
        if message_id in self._queue:
            self._queue.remove(message_id)
        return result

    def deliver_all(self) -> List[Any]:
        return [self.deliver(message_id) for message_id in list(self._queue)]

    def redeliver(self, message_id: str) -> Any:
        logger.info("Redelivering message %s", message_id[:18])
        return self.deliver(message_id)
