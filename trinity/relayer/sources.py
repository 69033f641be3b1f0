"""
Proof sources: where the relayer gets each ledger's Merkle proof for an
operation.

    HttpProofSource      a ledger validator's HTTP endpoint
    StubLedgerValidator  in-process stand-in that commits operation leaves to
                         a local Merkle tree and signs its proofs; for tests
                         and local runs, never for production
"""

import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional

import httpx

from ..consensus.types import ChainProof, LedgerId, Operation
from ..crypto.merkle import MerkleTree, operation_leaf
from ..crypto.signing import address_of, load_private_key, sign_proof
from ..exceptions import InvalidProofError, TransientRelayError
from ..logger import get_logger

logger = get_logger(__name__)


class ProofSource(ABC):
    """One ledger's proof provider."""

    def __init__(self, ledger: LedgerId):
        self.ledger = LedgerId(ledger)

    @abstractmethod
    async def fetch_proof(self, operation: Operation) -> ChainProof:
        """
        Return this ledger's proof for *operation*.

        Raises:
            TransientRelayError: not committed yet, or the ledger is unreachable
        """

    async def close(self) -> None:
        pass


class HttpProofSource(ProofSource):
    """
    Fetches proofs from ``GET {base_url}/proofs/{operation_id}``.

    The endpoint answers ``{"ok": true, "result": {...chain proof...}}``, or
    404 while the operation is not committed on its ledger yet.
    """

    def __init__(
        self,
        ledger: LedgerId,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        super().__init__(ledger)
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def fetch_proof(self, operation: Operation) -> ChainProof:
        url = f"{self.base_url}/proofs/{operation.operation_id}"
        try:
            response = await self._client.get(url)
        except httpx.RequestError as e:
            raise TransientRelayError(f"{self.ledger.name} validator unreachable: {e}") from e

        if response.status_code == 404:
            raise TransientRelayError(
                f"{self.ledger.name} has not committed {operation.operation_id} yet"
            )
        if response.status_code >= 500:
            raise TransientRelayError(f"{self.ledger.name} validator returned {response.status_code}")
        if response.status_code != 200:
            raise InvalidProofError(
                f"{self.ledger.name} validator rejected proof request: {response.status_code}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise InvalidProofError(f"{self.ledger.name} validator returned non-JSON") from e
        if not isinstance(body, dict):
            raise InvalidProofError(f"{self.ledger.name} validator returned {type(body).__name__}, expected an object")
        if not body.get("ok"):
            error = body.get("error")
            raise TransientRelayError(f"{self.ledger.name} validator error: {error}")

        try:
            proof = ChainProof.from_dict(body["result"])
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidProofError(f"{self.ledger.name} validator returned a malformed proof: {e}") from e
        if proof.ledger_id != self.ledger or proof.operation_id.lower() != operation.operation_id:
            raise InvalidProofError(
                f"{self.ledger.name} validator answered for "
                f"{proof.ledger_id.name}/{proof.operation_id}"
            )
        return proof

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class StubLedgerValidator(ProofSource):
    """
    Simulated validator for one ledger.

    Every committed operation leaf goes into a local sorted-pair Merkle tree;
    proofs are built against the current root and signed with the validator
    key, exactly as the coordinator expects from a real ledger.

    Args:
        ledger: Ledger this validator speaks for
        private_key: secp256k1 key (hex or bytes) used to sign proofs
        auto_commit: Commit unseen operations on first fetch. When False,
                     only operations passed to ``commit`` can be proven.
        clock: Unix time source for proof timestamps
    """

    def __init__(
        self,
        ledger: LedgerId,
        private_key,
        auto_commit: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(ledger)
        self._key = load_private_key(private_key)
        self.address = address_of(self._key)
        self.auto_commit = auto_commit
        self._clock = clock
        self._tree = MerkleTree()
        self._block_height = 0
        self._committed_at: Dict[str, int] = {}
        self.online = True
        self.fetches = 0

    def commit(self, operation_id: str) -> str:
        """Add the operation's leaf to the tree. Returns the new root."""
        operation_id = operation_id.lower()
        if operation_id not in self._committed_at:
            self._tree.add_leaf(operation_leaf(operation_id))
            self._block_height += 1
            self._committed_at[operation_id] = self._block_height
        return self._tree.root

    @property
    def root(self) -> str:
        return self._tree.root

    async def fetch_proof(self, operation: Operation) -> ChainProof:
        self.fetches += 1
        if not self.online:
            raise TransientRelayError(f"{self.ledger.name} stub validator is offline")
        return self.proof_for(operation.operation_id)

    def proof_for(self, operation_id: str) -> ChainProof:
        """Signed proof of *operation_id* against the current root."""
        operation_id = operation_id.lower()
        if operation_id not in self._committed_at:
            if not self.auto_commit:
                raise TransientRelayError(
                    f"{self.ledger.name} has not committed {operation_id} yet"
                )
            self.commit(operation_id)

        leaf = operation_leaf(operation_id)
        path = self._tree.proof(self._tree.index_of(leaf))
        root = self._tree.root
        timestamp = int(self._clock())
        return ChainProof(
            operation_id=operation_id,
            ledger_id=self.ledger,
            merkle_root=root,
            sibling_path=path,
            block_reference=f"{self.ledger.name.lower()}:{self._block_height}",
            timestamp=timestamp,
            signature=sign_proof(self._key, operation_id, self.ledger, root, timestamp),
            leaf=leaf,
        )
