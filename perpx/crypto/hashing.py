"""
PerpX Crypto Hashing Module

Hash and address helpers shared by the randomizer, the bridge and the ledger:
- keccak256: Web3 standard for message ids and randomness derivation
- abi_keccak256: keccak256 over ABI-encoded values (Solidity keccak256(abi.encode(...)))
- normalize_address: EIP-55 checksum form used as the canonical account key
"""

from typing import Any, Sequence, Union

from eth_abi import encode
from eth_utils import is_address, keccak, to_checksum_address

from ..exceptions import ValidationError


def keccak256(data: Union[bytes, str]) -> bytes:
    """
    Compute Keccak-256 hash (Ethereum standard).

    Args:
        data: Input bytes or hex string

    Returns:
        32-byte hash
    """
    if isinstance(data, str):
        if data.startswith('0x') or data.startswith('0X'):
            data = bytes.fromhex(data[2:])
        else:
            data = bytes.fromhex(data)
    return keccak(data)


def keccak256_hex(data: Union[bytes, str]) -> str:
    """Keccak-256 as a 0x-prefixed hex string."""
    return '0x' + keccak256(data).hex()


def abi_keccak256(types: Sequence[str], values: Sequence[Any]) -> bytes:
    """keccak256(abi.encode(values...))"""
    return keccak(encode(list(types), list(values)))


def abi_keccak256_int(types: Sequence[str], values: Sequence[Any]) -> int:
    """abi_keccak256 interpreted as a big-endian uint256."""
    return int.from_bytes(abi_keccak256(types, values), "big")


def normalize_address(address: str) -> str:
    """
    Validate an account address and return its checksum form.

    Raises:
        ValidationError: if the value is not a 20-byte hex address
    """
    if not isinstance(address, str) or not is_address(address):
        raise ValidationError(f"Invalid address: {address!r}")
    return to_checksum_address(address)


def contract_address(label: str) -> str:
    """Deterministic checksum address for an in-process component: last 20 bytes of keccak(label)."""
    return to_checksum_address(keccak(text=label)[-20:])
