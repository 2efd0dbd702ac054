"""
PerpX Crypto Module

Hashing and address helpers.
"""

from .hashing import (
    abi_keccak256,
    abi_keccak256_int,
    contract_address,
    keccak256,
    keccak256_hex,
    normalize_address,
)

__all__ = [
    "abi_keccak256",
    "abi_keccak256_int",
    "contract_address",
    "keccak256",
    "keccak256_hex",
    "normalize_address",
]
