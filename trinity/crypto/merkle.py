"""
Trinity Merkle Verification

Sorted-pair keccak256 Merkle proofs, the same construction the ledger-side
validators use: at every level the two 32-byte children are ordered before
hashing, so a proof is just the list of siblings and carries no left/right
flags.

``verify_merkle_proof`` is pure and never raises; malformed input is simply
an invalid proof.
"""

from typing import List, Optional, Sequence, Union

from .hashing import keccak256, to_bytes32, to_hex32

BytesLike = Union[bytes, str]


def hash_pair(a: bytes, b: bytes) -> bytes:
    """keccak256 of the two nodes, smaller one first."""
    if a < b:
        return keccak256(a + b)
    return keccak256(b + a)


def operation_leaf(operation_id: BytesLike) -> str:
    """The leaf a validator commits for an operation: keccak256(operation_id)."""
    return '0x' + keccak256(to_bytes32(operation_id)).hex()


def compute_root(leaf: BytesLike, sibling_path: Sequence[BytesLike]) -> bytes:
    """Fold *leaf* with each sibling in path order. Raises ValueError on malformed input."""
    computed = to_bytes32(leaf)
    for sibling in sibling_path:
        computed = hash_pair(computed, to_bytes32(sibling))
    return computed


def verify_merkle_proof(
    leaf: BytesLike,
    sibling_path: Sequence[BytesLike],
    claimed_root: BytesLike,
    max_depth: int,
) -> bool:
    """
    Check that *leaf* and *sibling_path* fold to *claimed_root*.

    An empty path is valid only when the leaf is the root. Paths longer than
    *max_depth*, an empty root and anything that does not decode as 32-byte
    hex all return False.
    """
    if not claimed_root or sibling_path is None:
        return False
    if len(sibling_path) > max_depth:
        return False
    try:
        root = to_bytes32(claimed_root)
        return compute_root(leaf, sibling_path) == root
    except (ValueError, TypeError):
        return False


class MerkleTree:
    """
    Sorted-pair Merkle tree over 32-byte leaves.

    Used by stub validators to commit operation leaves and hand out proofs.
    An odd node at the end of a level is promoted to the next level as is.
    """

    def __init__(self, leaves: Optional[Sequence[BytesLike]] = None):
        self._leaves: List[bytes] = [to_bytes32(l) for l in (leaves or [])]
        self._layers: List[List[bytes]] = []
        self._build()

    def _build(self) -> None:
        self._layers = [list(self._leaves)]
        level = self._layers[0]
        while len(level) > 1:
            nxt = []
            for i in range(0, len(level), 2):
                if i + 1 < len(level):
                    nxt.append(hash_pair(level[i], level[i + 1]))
                else:
                    nxt.append(level[i])
            self._layers.append(nxt)
            level = nxt

    def add_leaf(self, leaf: BytesLike) -> int:
        """Append a leaf, rebuild, and return its index."""
        self._leaves.append(to_bytes32(leaf))
        self._build()
        return len(self._leaves) - 1

    def __len__(self) -> int:
        return len(self._leaves)

    @property
    def depth(self) -> int:
        return len(self._layers) - 1

    @property
    def root(self) -> str:
        if not self._leaves:
            raise ValueError("empty tree has no root")
        return to_hex32(self._layers[-1][0])

    def index_of(self, leaf: BytesLike) -> int:
        return self._leaves.index(to_bytes32(leaf))

    def proof(self, index: int) -> List[str]:
        """Sibling path for the leaf at *index*, bottom up."""
        if not 0 <= index < len(self._leaves):
            raise IndexError(f"leaf index {index} out of range")
        path = []
        for level in self._layers[:-1]:
            sibling = index ^ 1
            if sibling < len(level):
                path.append(to_hex32(level[sibling]))
            index //= 2
        return path
