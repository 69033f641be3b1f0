"""
Trinity Relayer

  - relayer: Relayer (watchers, concurrent proof fetch, per-ledger submission)
  - sources: ProofSource, HttpProofSource, StubLedgerValidator
  - client: CoordinatorClient, InProcessCoordinatorClient, HttpCoordinatorClient
  - nonces: NonceTable persisted as JSON
"""

from .client import (
    CoordinatorClient,
    HttpCoordinatorClient,
    InProcessCoordinatorClient,
    estimate_submit_gas,
)
from .nonces import NonceTable
from .relayer import RelayFailure, RelayOutcome, Relayer
from .sources import HttpProofSource, ProofSource, StubLedgerValidator

__all__ = [
    "CoordinatorClient",
    "HttpCoordinatorClient",
    "InProcessCoordinatorClient",
    "estimate_submit_gas",
    "NonceTable",
    "RelayFailure",
    "RelayOutcome",
    "Relayer",
    "HttpProofSource",
    "ProofSource",
    "StubLedgerValidator",
]
