"""
Trinity Consensus

  - types: LedgerId, Operation, ChainProof, CircuitBreakerState, FeeEpoch, Event
  - fees: FeeEngine and the integer fee split functions
  - anomaly: AnomalyDetector (circuit breaker) and its state store
  - coordinator: ConsensusCoordinator, the 2-of-3 state machine
"""

from .types import (
    ALL_LEDGERS,
    ChainProof,
    CircuitBreakerState,
    Event,
    EventType,
    FeeEpoch,
    LEDGER_NAMES,
    LedgerId,
    Operation,
    OperationStatus,
    compute_operation_id,
)
from .fees import (
    FeeEngine,
    FeeSplit,
    cancellation_refund,
    epoch_validator_reward,
    per_validator_reward,
    split_fee,
)
from .anomaly import (
    AnomalyDetector,
    CircuitBreakerStateStore,
    InMemoryCircuitBreakerStateStore,
)
from .coordinator import (
    ConsensusCoordinator,
    InMemoryPayoutSink,
    PayoutSink,
)

__all__ = [
    "ALL_LEDGERS",
    "ChainProof",
    "CircuitBreakerState",
    "Event",
    "EventType",
    "FeeEpoch",
    "LEDGER_NAMES",
    "LedgerId",
    "Operation",
    "OperationStatus",
    "compute_operation_id",
    "FeeEngine",
    "FeeSplit",
    "cancellation_refund",
    "epoch_validator_reward",
    "per_validator_reward",
    "split_fee",
    "AnomalyDetector",
    "CircuitBreakerStateStore",
    "InMemoryCircuitBreakerStateStore",
    "ConsensusCoordinator",
    "InMemoryPayoutSink",
    "PayoutSink",
]
