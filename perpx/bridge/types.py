"""
PerpX Cross-Chain Bridge Types

Core data structures for deposit settlement between chains.

Defines:
  - ChainSelector enum for supported chains
  - TokenAmount for assets travelling with a message
  - DepositPayload, the ABI-encoded user deposit instruction
  - BridgeMessage (outbound) and ReceivedMessage (inbound) envelopes
  - BridgeTokenConfig for assets accepted on the destination
  - SettlementReceipt returned by the destination pool
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Optional, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError

from ..crypto.hashing import normalize_address
from ..exceptions import ValidationError


# ══════════════════════════════════════════════════════════════════════
#  CHAIN IDENTIFIERS
# ══════════════════════════════════════════════════════════════════════

class ChainSelector(IntEnum):
    """Messaging-network chain selectors."""
    AVALANCHE_FUJI   = 14767482510784806043
    ETHEREUM_SEPOLIA = 16015286601757825753


CHAIN_NAMES: Dict[int, str] = {
    ChainSelector.AVALANCHE_FUJI: "Avalanche Fuji",
    ChainSelector.ETHEREUM_SEPOLIA: "Ethereum Sepolia",
}


# ══════════════════════════════════════════════════════════════════════
#  ASSETS
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TokenAmount:
    """An amount of a token (by address) in the token's smallest unit."""
    token: str
    amount: int

    def __post_init__(self):
        object.__setattr__(self, "token", normalize_address(self.token))
        if self.amount <= 0:
            raise ValidationError("Token amount must be positive")


@dataclass(frozen=True)
class BridgeTokenConfig:
    """
    An asset accepted for settlement on the destination chain.

    Attributes:
        symbol: Ticker, e.g. "USDC"
        address: Token address on the destination chain
        decimals: Token precision
        price_symbol: Oracle symbol used to value non-settlement tokens
    """
    symbol: str
    address: str
    decimals: int
    price_symbol: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "address", normalize_address(self.address))
        if self.decimals < 0:
            raise ValidationError("decimals must be non-negative")


# ══════════════════════════════════════════════════════════════════════
#  PAYLOAD
# ══════════════════════════════════════════════════════════════════════

DEPOSIT_PAYLOAD_TYPES = ["address", "address", "uint256", "uint256"]


@dataclass(frozen=True)
class DepositPayload:
    """
    User deposit instruction carried by a bridge message.

    Encoded as abi.encode(user, token, amount, nonce). The nonce is unique
    per deposit on the origin chain so identical deposits stay distinct.
    """
    user: str
    token: str
    amount: int
    nonce: int

    def encode(self) -> bytes:
        return encode(DEPOSIT_PAYLOAD_TYPES, [self.user, self.token, self.amount, self.nonce])

    @classmethod
    def decode(cls, data: bytes) -> 'DepositPayload':
        try:
            user, token, amount, nonce = decode(DEPOSIT_PAYLOAD_TYPES, data)
        except DecodingError as e:
            raise ValidationError(f"Malformed deposit payload: {e}") from e
        return cls(
            user=normalize_address(user),
            token=normalize_address(token),
            amount=amount,
            nonce=nonce,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user": self.user,
            "token": self.token,
            "amount": self.amount,
            "nonce": self.nonce,
        }


# ══════════════════════════════════════════════════════════════════════
#  MESSAGES
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BridgeMessage:
    """Outbound message: receiver on the destination, payload and assets."""
    receiver: str
    data: bytes
    token_amounts: Tuple[TokenAmount, ...] = field(default_factory=tuple)
    fee_token: str = ""

    @property
    def size(self) -> int:
        return len(self.data) + 64 * len(self.token_amounts)


@dataclass(frozen=True)
class ReceivedMessage:
    """
    Inbound message as delivered to the destination receiver.

    Attributes:
        message_id: Transport-assigned id (0x hex), unique per send
        source_chain: Chain the message came from
        sender: Sending contract on the source chain
        data: Encoded DepositPayload
        token_amounts: Assets delivered with the message (may be empty)
    """
    message_id: str
    source_chain: ChainSelector
    sender: str
    data: bytes
    token_amounts: Tuple[TokenAmount, ...] = field(default_factory=tuple)

    @property
    def delivered(self) -> Optional[TokenAmount]:
        return self.token_amounts[0] if self.token_amounts else None


@dataclass(frozen=True)
class SettlementReceipt:
    message_id: str
    user: str
    credited_amount: int
    duplicate: bool = False
    asset_settled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "user": self.user,
            "credited_amount": self.credited_amount,
            "duplicate": self.duplicate,
            "asset_settled": self.asset_settled,
        }
