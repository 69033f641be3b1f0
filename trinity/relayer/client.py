"""
Coordinator clients used by the relayer.

    InProcessCoordinatorClient  wraps a ConsensusCoordinator object and models
                                the host ledger's transaction rules (per
                                sender nonces, gas)
    HttpCoordinatorClient       talks to the coordinator's HTTP API
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..consensus.coordinator import ConsensusCoordinator
from ..consensus.types import ChainProof, Event, LedgerId, Operation
from ..exceptions import (
    NonceError,
    OperationNotFoundError,
    TransientRelayError,
    exception_for_code,
)
from ..logger import get_logger

logger = get_logger(__name__)

# Rough cost of a proof submission on the host ledger
BASE_SUBMIT_GAS = 60_000
GAS_PER_SIBLING = 6_000
DEFAULT_GAS_PRICE = 1_000_000_000  # 1 gwei


def estimate_submit_gas(proof: ChainProof) -> int:
    return BASE_SUBMIT_GAS + GAS_PER_SIBLING * len(proof.sibling_path)


class CoordinatorClient(ABC):

    @abstractmethod
    async def get_events(self, after: int = 0, limit: int = 100) -> List[Event]:
        ...

    @abstractmethod
    async def get_operation(self, operation_id: str) -> Operation:
        ...

    @abstractmethod
    async def submit_proof(
        self,
        proof: ChainProof,
        sender: str,
        host_ledger: LedgerId,
        nonce: int,
        gas_limit: int,
        gas_price: int,
    ) -> Operation:
        ...

    async def estimate_gas(self, proof: ChainProof) -> int:
        return estimate_submit_gas(proof)

    async def gas_price(self) -> int:
        return DEFAULT_GAS_PRICE

    async def expected_nonce(self, sender: str, host_ledger: LedgerId) -> Optional[int]:
        """The host ledger's next nonce for *sender*, or None if it has no such notion."""
        return None

    async def close(self) -> None:
        pass


class InProcessCoordinatorClient(CoordinatorClient):
    """
    Calls a ConsensusCoordinator in the same process.

    A submission whose nonce matches the sender's next nonce on the host
    ledger is "mined": the nonce is consumed even when the coordinator
    rejects the proof, as a reverted transaction would. A mismatched nonce
    raises NonceError and changes nothing.
    """

    def __init__(self, coordinator: ConsensusCoordinator, gas_price: int = DEFAULT_GAS_PRICE):
        self.coordinator = coordinator
        self._gas_price = gas_price
        self._nonces: Dict[Tuple[str, LedgerId], int] = {}
        self.submissions: List[Dict[str, Any]] = []

    async def get_events(self, after: int = 0, limit: int = 100) -> List[Event]:
        return self.coordinator.get_events(after=after, limit=limit)

    async def get_operation(self, operation_id: str) -> Operation:
        return self.coordinator.get_operation(operation_id)

    async def submit_proof(
        self,
        proof: ChainProof,
        sender: str,
        host_ledger: LedgerId,
        nonce: int,
        gas_limit: int,
        gas_price: int,
    ) -> Operation:
        key = (sender.lower(), LedgerId(host_ledger))
        expected = self._nonces.get(key, 0)
        if nonce != expected:
            raise NonceError(f"nonce {nonce} for {sender} on {key[1].name}, expected {expected}")

        self._nonces[key] = expected + 1
        self.submissions.append({
            "operation_id": proof.operation_id,
            "ledger_id": int(proof.ledger_id),
            "host_ledger": int(host_ledger),
            "nonce": nonce,
            "gas_limit": gas_limit,
            "gas_price": gas_price,
        })
        proof.submitter = proof.submitter or sender
        return self.coordinator.submit_chain_proof(proof)

    async def gas_price(self) -> int:
        return self._gas_price

    async def expected_nonce(self, sender: str, host_ledger: LedgerId) -> Optional[int]:
        return self._nonces.get((sender.lower(), LedgerId(host_ledger)), 0)


class HttpCoordinatorClient(CoordinatorClient):
    """
    Client for the coordinator HTTP API (see trinity.rpc.server).

    Error responses are turned back into the exception class named by their
    ``error`` code, so a DuplicateProofError on the server is a
    DuplicateProofError here.
    """

    def __init__(
        self,
        base_url: str,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.RequestError as e:
            raise TransientRelayError(f"coordinator unreachable: {e}") from e

        # 500 carries a JSON error body; gateway errors do not
        if response.status_code in (502, 503, 504):
            raise TransientRelayError(f"coordinator returned {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise TransientRelayError(f"coordinator returned non-JSON ({response.status_code})") from e

        if body.get("ok"):
            return body.get("result")

        code = body.get("error", "trinity_error")
        message = body.get("message", code)
        raise exception_for_code(code)(message)

    async def get_events(self, after: int = 0, limit: int = 100) -> List[Event]:
        result = await self._request("GET", "/events", params={"after": after, "limit": limit})
        return [Event.from_dict(e) for e in result]

    async def get_operation(self, operation_id: str) -> Operation:
        result = await self._request("GET", f"/operations/{operation_id}")
        if result is None:
            raise OperationNotFoundError(f"operation {operation_id} not found")
        return Operation.from_dict(result)

    async def submit_proof(
        self,
        proof: ChainProof,
        sender: str,
        host_ledger: LedgerId,
        nonce: int,
        gas_limit: int,
        gas_price: int,
    ) -> Operation:
        payload = proof.to_dict()
        payload["submitter"] = proof.submitter or sender
        result = await self._request(
            "POST", f"/operations/{proof.operation_id}/proofs", json=payload,
        )
        return Operation.from_dict(result)

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
