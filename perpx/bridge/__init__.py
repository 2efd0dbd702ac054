"""
PerpX Cross-Chain Bridge Module

Deposit settlement from origin chains into the perpetuals ledger.
"""

from .settlement import CrossChainManager, PendingSettlement, PoolManager
from .transport import BridgeTransport, InMemoryTransport
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

__all__ = [
    "CrossChainManager",
    "PendingSettlement",
    "PoolManager",
    "BridgeTransport",
    "InMemoryTransport",
    "CHAIN_NAMES",
    "BridgeMessage",
    "BridgeTokenConfig",
    "ChainSelector",
    "DepositPayload",
    "ReceivedMessage",
    "SettlementReceipt",
    "TokenAmount",
]
