"""
Merkle verification and proof signing tests.

Coverage:
  - keccak256 helpers and 32-byte coercion
  - Sorted-pair hashing, root folding, verify_merkle_proof edge cases
  - MerkleTree proofs (even, odd, single leaf)
  - Proof signature round trip and tampering
"""

import os
import sys

import pytest

# ── Path setup ────────────────────────────────────────────────────────
ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from trinity.crypto.hashing import is_hash, keccak256, keccak256_hex, to_bytes32, to_hex32, uint256
from trinity.crypto.merkle import (
    MerkleTree,
    compute_root,
    hash_pair,
    operation_leaf,
    verify_merkle_proof,
)
from trinity.crypto.signing import (
    address_of,
    load_private_key,
    proof_message_hash,
    recover_signer,
    sign_proof,
)
from trinity.exceptions import InvalidSignatureError

KEY_A = "0x" + "11" * 32
KEY_B = "0x" + "22" * 32


def _leaf(n: int) -> bytes:
    return keccak256(n.to_bytes(4, "big"))


# ══════════════════════════════════════════════════════════════════════
#  SECTION 1: HASHING
# ══════════════════════════════════════════════════════════════════════

class TestHashing:

    def test_keccak_empty_vector(self):
        # Ethereum keccak256 of the empty string, not SHA3-256
        assert keccak256_hex(b"") == (
            "0xc5d2460186f7233c927e7db2dcc703c0e500b653ca82273b7bfad8045d85a470"
        )

    def test_to_bytes32_accepts_hex_with_and_without_prefix(self):
        raw = bytes(range(32))
        assert to_bytes32(raw.hex()) == raw
        assert to_bytes32("0x" + raw.hex()) == raw
        assert to_hex32(raw) == "0x" + raw.hex()

    def test_to_bytes32_rejects_wrong_length(self):
        with pytest.raises(ValueError):
            to_bytes32("0x1234")

    def test_is_hash(self):
        assert is_hash("0x" + "ab" * 32)
        assert not is_hash("0x" + "ab" * 31)
        assert not is_hash(None)

    def test_uint256_big_endian(self):
        assert uint256(1) == b"\x00" * 31 + b"\x01"
        assert len(uint256(2 ** 255)) == 32


# ══════════════════════════════════════════════════════════════════════
#  SECTION 2: VERIFICATION
# ══════════════════════════════════════════════════════════════════════

class TestVerifyMerkleProof:

    def test_hash_pair_is_order_independent(self):
        a, b = _leaf(1), _leaf(2)
        assert hash_pair(a, b) == hash_pair(b, a)

    def test_two_leaf_proof(self):
        a, b = _leaf(1), _leaf(2)
        root = hash_pair(a, b)
        assert verify_merkle_proof(a, [b], root, max_depth=10)
        assert verify_merkle_proof(b, [a], root, max_depth=10)

    def test_empty_path_means_leaf_is_root(self):
        a = _leaf(1)
        assert verify_merkle_proof(a, [], a, max_depth=10)
        assert not verify_merkle_proof(a, [], _leaf(2), max_depth=10)

    def test_wrong_root_fails(self):
        a, b = _leaf(1), _leaf(2)
        assert not verify_merkle_proof(a, [b], _leaf(3), max_depth=10)

    def test_empty_root_fails(self):
        assert not verify_merkle_proof(_leaf(1), [_leaf(2)], "", max_depth=10)

    def test_path_longer_than_max_depth_fails(self):
        leaf = _leaf(0)
        path = [_leaf(i) for i in range(1, 12)]
        root = compute_root(leaf, path)
        assert verify_merkle_proof(leaf, path, root, max_depth=11)
        assert not verify_merkle_proof(leaf, path, root, max_depth=10)

    def test_malformed_sibling_is_invalid_not_an_error(self):
        assert not verify_merkle_proof(_leaf(1), ["0xnothex"], _leaf(2), max_depth=10)

    def test_operation_leaf_is_keccak_of_id(self):
        op_id = "0x" + "ab" * 32
        assert operation_leaf(op_id) == keccak256_hex(bytes.fromhex("ab" * 32))


# ══════════════════════════════════════════════════════════════════════
#  SECTION 3: MERKLE TREE
# ══════════════════════════════════════════════════════════════════════

class TestMerkleTree:

    @pytest.mark.parametrize("size", [1, 2, 3, 5, 8])
    def test_every_leaf_proves_against_root(self, size):
        leaves = [_leaf(i) for i in range(size)]
        tree = MerkleTree(leaves)
        for i, leaf in enumerate(leaves):
            assert verify_merkle_proof(leaf, tree.proof(i), tree.root, max_depth=10)

    def test_odd_leaf_is_promoted(self):
        a, b, c = _leaf(1), _leaf(2), _leaf(3)
        tree = MerkleTree([a, b, c])
        assert tree.root == to_hex32(hash_pair(hash_pair(a, b), c))
        assert tree.proof(2) == [to_hex32(hash_pair(a, b))]

    def test_add_leaf_changes_root(self):
        tree = MerkleTree([_leaf(1)])
        before = tree.root
        index = tree.add_leaf(_leaf(2))
        assert index == 1
        assert len(tree) == 2
        assert tree.root != before
        assert tree.depth == 1

    def test_empty_tree_has_no_root(self):
        with pytest.raises(ValueError):
            MerkleTree().root

    def test_proof_index_out_of_range(self):
        with pytest.raises(IndexError):
            MerkleTree([_leaf(1)]).proof(1)


# ══════════════════════════════════════════════════════════════════════
#  SECTION 4: PROOF SIGNATURES
# ══════════════════════════════════════════════════════════════════════

class TestProofSignatures:

    OP_ID = "0x" + "cd" * 32
    ROOT_HASH = "0x" + "ef" * 32

    def test_sign_and_recover(self):
        key = load_private_key(KEY_A)
        sig = sign_proof(key, self.OP_ID, 2, self.ROOT_HASH, 1_700_000_000)
        assert recover_signer(sig, self.OP_ID, 2, self.ROOT_HASH, 1_700_000_000) == address_of(key)

    def test_message_binds_ledger_and_timestamp(self):
        base = proof_message_hash(self.OP_ID, 1, self.ROOT_HASH, 100)
        assert proof_message_hash(self.OP_ID, 2, self.ROOT_HASH, 100) != base
        assert proof_message_hash(self.OP_ID, 1, self.ROOT_HASH, 101) != base

    def test_tampered_message_recovers_other_address(self):
        key = load_private_key(KEY_A)
        sig = sign_proof(key, self.OP_ID, 1, self.ROOT_HASH, 100)
        assert recover_signer(sig, self.OP_ID, 3, self.ROOT_HASH, 100) != address_of(key)

    def test_distinct_keys_distinct_addresses(self):
        assert address_of(load_private_key(KEY_A)) != address_of(load_private_key(KEY_B))

    @pytest.mark.parametrize("signature", ["", "0x1234", "0x" + "00" * 65])
    def test_malformed_signature_rejected(self, signature):
        with pytest.raises(InvalidSignatureError):
            recover_signer(signature, self.OP_ID, 1, self.ROOT_HASH, 100)
