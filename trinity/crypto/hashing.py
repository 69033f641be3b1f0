"""
Trinity Crypto Hashing Module

keccak256 and the 32-byte hex helpers used for operation ids, Merkle leaves
and roots. Ids travel as 0x-prefixed lowercase hex strings everywhere outside
this module.
"""

from typing import Union

from Crypto.Hash import keccak as _keccak

from ..constants import HASH_LENGTH, VALID_HASH_PATTERN


def keccak256(data: Union[bytes, str]) -> bytes:
    """
    Compute Keccak-256 hash (Ethereum standard).

    Args:
        data: Input bytes or hex string

    Returns:
        32-byte hash
    """
    if isinstance(data, str):
        data = hex_to_bytes(data)

    k = _keccak.new(digest_bits=256)
    k.update(data)
    return k.digest()


def keccak256_hex(data: Union[bytes, str]) -> str:
    """Keccak-256 as a 0x-prefixed hex string."""
    return '0x' + keccak256(data).hex()


def hex_to_bytes(value: str) -> bytes:
    """Decode hex with or without a 0x prefix. Raises ValueError on bad input."""
    if value.startswith('0x') or value.startswith('0X'):
        value = value[2:]
    return bytes.fromhex(value)


def to_bytes32(value: Union[bytes, str]) -> bytes:
    """
    Normalize a 32-byte value given as bytes or hex.

    Raises:
        ValueError: if the value is not exactly 32 bytes
    """
    if isinstance(value, str):
        value = hex_to_bytes(value)
    if len(value) != HASH_LENGTH:
        raise ValueError(f"expected {HASH_LENGTH} bytes, got {len(value)}")
    return bytes(value)


def to_hex32(value: Union[bytes, str]) -> str:
    """Canonical 0x-prefixed lowercase form of a 32-byte value."""
    return '0x' + to_bytes32(value).hex()


def is_hash(value) -> bool:
    """True for a 0x-prefixed 32-byte hex string."""
    return isinstance(value, str) and VALID_HASH_PATTERN.match(value) is not None


def uint256(value: int) -> bytes:
    """Big-endian 32-byte encoding, as abi.encodePacked does for uint256."""
    return value.to_bytes(32, 'big')
