"""
Trinity Crypto Module

- Hash functions and 32-byte hex helpers (keccak256)
- Sorted-pair Merkle proofs
- secp256k1 proof signatures
"""

from .hashing import keccak256, keccak256_hex, to_bytes32, to_hex32, is_hash
from .merkle import MerkleTree, compute_root, hash_pair, operation_leaf, verify_merkle_proof
from .signing import (
    address_of,
    load_private_key,
    proof_message_hash,
    recover_signer,
    sign_proof,
)

__all__ = [
    'keccak256',
    'keccak256_hex',
    'to_bytes32',
    'to_hex32',
    'is_hash',
    'MerkleTree',
    'compute_root',
    'hash_pair',
    'operation_leaf',
    'verify_merkle_proof',
    'address_of',
    'load_private_key',
    'proof_message_hash',
    'recover_signer',
    'sign_proof',
]
