"""
Trinity Consensus Types

Core data structures for 2-of-3 cross-ledger consensus.

Defines:
  - LedgerId enum for the three independent ledgers
  - OperationStatus lifecycle
  - Operation, the unit every ledger must vouch for
  - ChainProof, one ledger's Merkle evidence for an operation
  - CircuitBreakerState, the single breaker record shared with the detector
  - FeeEpoch, the accounting period fee rewards are settled in
  - Event, an entry of the coordinator's append-only event log

All amounts are integers in the smallest fee unit and are serialized as
strings so they survive JSON clients with 53-bit numbers.
"""

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional, Set

from ..constants import REQUIRED_CONFIRMATIONS
from ..crypto.hashing import keccak256_hex, uint256


# ══════════════════════════════════════════════════════════════════════
#  LEDGER IDENTIFIERS
# ══════════════════════════════════════════════════════════════════════

class LedgerId(IntEnum):
    """The three ledgers that vote on every operation."""
    ETHEREUM = 1
    SOLANA   = 2
    TON      = 3

    @classmethod
    def parse(cls, value) -> "LedgerId":
        """Accept an int, a numeric string or a case-insensitive name."""
        if isinstance(value, LedgerId):
            return value
        if isinstance(value, str):
            if value.isdigit():
                return cls(int(value))
            return cls[value.strip().upper()]
        return cls(value)


LEDGER_NAMES: Dict[int, str] = {
    LedgerId.ETHEREUM: "Ethereum",
    LedgerId.SOLANA: "Solana",
    LedgerId.TON: "TON",
}

ALL_LEDGERS = (LedgerId.ETHEREUM, LedgerId.SOLANA, LedgerId.TON)


# ══════════════════════════════════════════════════════════════════════
#  OPERATION
# ══════════════════════════════════════════════════════════════════════

class OperationStatus(IntEnum):
    """
    PENDING -> VERIFIED -> EXECUTED, or PENDING -> CANCELLED | EXPIRED.
    VERIFIED is transient: execution follows in the same call.
    """
    PENDING   = 0
    VERIFIED  = 1
    EXECUTED  = 2
    CANCELLED = 3
    EXPIRED   = 4


TERMINAL_STATUSES = frozenset({OperationStatus.CANCELLED, OperationStatus.EXPIRED})


def compute_operation_id(
    initiator: str,
    source_ledger: LedgerId,
    destination_ledger: LedgerId,
    target_contract: str,
    amount: int,
    nonce: int,
) -> str:
    """Deterministic operation id; *nonce* is the initiator's sequence number."""
    target = target_contract.lower().encode('utf-8')
    data = (
        initiator.lower().encode('utf-8') +
        int(source_ledger).to_bytes(1, 'big') +
        int(destination_ledger).to_bytes(1, 'big') +
        len(target).to_bytes(2, 'big') + target +
        uint256(amount) +
        uint256(nonce)
    )
    return keccak256_hex(data)


@dataclass
class Operation:
    """
    A cross-ledger operation awaiting 2-of-3 confirmation.

    Attributes:
        operation_id: keccak256 over the creation parameters and nonce
        initiator: Address that created (and may cancel) the operation
        source_ledger: Ledger the operation originates from
        destination_ledger: Ledger the operation settles on
        amount: Value moved, smallest unit
        fee: Fee charged at creation, smallest unit
        nonce: Initiator's sequence number at creation
        created_at / expires_at: Unix seconds
        status: Lifecycle status
        confirmed_ledgers: Ledgers whose proof was accepted
    """
    operation_id: str
    initiator: str
    source_ledger: LedgerId
    destination_ledger: LedgerId
    amount: int
    fee: int
    nonce: int
    created_at: int
    expires_at: int
    target_contract: str = ""
    status: OperationStatus = OperationStatus.PENDING
    confirmed_ledgers: Set[LedgerId] = field(default_factory=set)
    prioritize_speed: bool = False
    prioritize_security: bool = False
    executed_at: Optional[int] = None
    cancelled_at: Optional[int] = None
    fee_reclaimed: bool = False

    @property
    def valid_proof_count(self) -> int:
        return len(self.confirmed_ledgers)

    @property
    def has_consensus(self) -> bool:
        return (
            self.valid_proof_count >= REQUIRED_CONFIRMATIONS
            and self.status not in TERMINAL_STATUSES
        )

    def is_expired(self, now: Optional[int] = None) -> bool:
        now = int(time.time()) if now is None else now
        return now > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "initiator": self.initiator,
            "source_ledger": int(self.source_ledger),
            "destination_ledger": int(self.destination_ledger),
            "target_contract": self.target_contract,
            "amount": str(self.amount),
            "fee": str(self.fee),
            "nonce": self.nonce,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "status": self.status.name,
            "confirmed_ledgers": sorted(int(l) for l in self.confirmed_ledgers),
            "valid_proof_count": self.valid_proof_count,
            "prioritize_speed": self.prioritize_speed,
            "prioritize_security": self.prioritize_security,
            "executed_at": self.executed_at,
            "cancelled_at": self.cancelled_at,
            "fee_reclaimed": self.fee_reclaimed,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Operation":
        status = d.get("status", "PENDING")
        return cls(
            operation_id=d["operation_id"],
            initiator=d["initiator"],
            source_ledger=LedgerId(int(d["source_ledger"])),
            destination_ledger=LedgerId(int(d["destination_ledger"])),
            target_contract=d.get("target_contract", ""),
            amount=int(d["amount"]),
            fee=int(d["fee"]),
            nonce=int(d["nonce"]),
            created_at=int(d["created_at"]),
            expires_at=int(d["expires_at"]),
            status=OperationStatus[status] if isinstance(status, str) else OperationStatus(status),
            confirmed_ledgers={LedgerId(int(l)) for l in d.get("confirmed_ledgers", [])},
            prioritize_speed=bool(d.get("prioritize_speed", False)),
            prioritize_security=bool(d.get("prioritize_security", False)),
            executed_at=d.get("executed_at"),
            cancelled_at=d.get("cancelled_at"),
            fee_reclaimed=bool(d.get("fee_reclaimed", False)),
        )


# ══════════════════════════════════════════════════════════════════════
#  CHAIN PROOF
# ══════════════════════════════════════════════════════════════════════

@dataclass
class ChainProof:
    """
    One ledger's evidence that it committed an operation.

    The leaf is never trusted from the submitter: the coordinator recomputes
    it from the operation id, and a differing ``leaf`` makes the proof invalid.
    """
    operation_id: str
    ledger_id: LedgerId
    merkle_root: str
    sibling_path: List[str] = field(default_factory=list)
    block_reference: str = ""
    timestamp: int = 0
    submitter: str = ""
    signature: str = ""
    leaf: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation_id": self.operation_id,
            "ledger_id": int(self.ledger_id),
            "merkle_root": self.merkle_root,
            "sibling_path": list(self.sibling_path),
            "block_reference": self.block_reference,
            "timestamp": self.timestamp,
            "submitter": self.submitter,
            "signature": self.signature,
            "leaf": self.leaf,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ChainProof":
        return cls(
            operation_id=d["operation_id"],
            ledger_id=LedgerId.parse(d["ledger_id"]),
            merkle_root=d["merkle_root"],
            sibling_path=list(d.get("sibling_path", [])),
            block_reference=str(d.get("block_reference", "")),
            timestamp=int(d.get("timestamp", 0)),
            submitter=d.get("submitter", ""),
            signature=d.get("signature", ""),
            leaf=d.get("leaf"),
        )


# ══════════════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER STATE
# ══════════════════════════════════════════════════════════════════════

@dataclass
class CircuitBreakerState:
    """
    The one breaker record. Created inactive, reset but never deleted.

    ``emergency_pause`` marks a pause set by the emergency controller (or an
    accounting halt); those never clear on their own.
    """
    active: bool = False
    emergency_pause: bool = False
    triggered_at: Optional[int] = None
    reason: str = ""
    recovery_attempts: int = 0
    cooldown_until: Optional[int] = None
    last_recovered_at: Optional[int] = None
    resume_approvals: Set[LedgerId] = field(default_factory=set)

    @property
    def paused(self) -> bool:
        return self.active or self.emergency_pause

    def to_dict(self) -> Dict[str, Any]:
        return {
            "active": self.active,
            "emergency_pause": self.emergency_pause,
            "triggered_at": self.triggered_at,
            "reason": self.reason,
            "recovery_attempts": self.recovery_attempts,
            "cooldown_until": self.cooldown_until,
            "last_recovered_at": self.last_recovered_at,
            "resume_approvals": sorted(int(l) for l in self.resume_approvals),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CircuitBreakerState":
        return cls(
            active=bool(d.get("active", False)),
            emergency_pause=bool(d.get("emergency_pause", False)),
            triggered_at=d.get("triggered_at"),
            reason=d.get("reason", ""),
            recovery_attempts=int(d.get("recovery_attempts", 0)),
            cooldown_until=d.get("cooldown_until"),
            last_recovered_at=d.get("last_recovered_at"),
            resume_approvals={LedgerId(int(l)) for l in d.get("resume_approvals", [])},
        )


# ══════════════════════════════════════════════════════════════════════
#  FEE EPOCH
# ══════════════════════════════════════════════════════════════════════

@dataclass
class FeeEpoch:
    """Fees of executed operations, settled to proof submitters per ledger at close."""
    epoch_id: int
    started_at: int
    fee_pool: int = 0
    proof_count_by_ledger: Dict[LedgerId, int] = field(
        default_factory=lambda: {l: 0 for l in ALL_LEDGERS}
    )
    total_proof_count: int = 0
    distributed: bool = False
    closed_at: Optional[int] = None
    ledger_rewards: Dict[LedgerId, int] = field(default_factory=dict)
    validators: Dict[LedgerId, List[str]] = field(default_factory=dict)
    claimed: Dict[LedgerId, Set[str]] = field(default_factory=dict)

    def record_proof(self, ledger: LedgerId) -> None:
        self.proof_count_by_ledger[ledger] = self.proof_count_by_ledger.get(ledger, 0) + 1
        self.total_proof_count += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "epoch_id": self.epoch_id,
            "started_at": self.started_at,
            "closed_at": self.closed_at,
            "fee_pool": str(self.fee_pool),
            "proof_count_by_ledger": {int(k): v for k, v in self.proof_count_by_ledger.items()},
            "total_proof_count": self.total_proof_count,
            "distributed": self.distributed,
            "ledger_rewards": {int(k): str(v) for k, v in self.ledger_rewards.items()},
            "validators": {int(k): list(v) for k, v in self.validators.items()},
            "claimed": {int(k): sorted(v) for k, v in self.claimed.items()},
        }


# ══════════════════════════════════════════════════════════════════════
#  EVENTS
# ══════════════════════════════════════════════════════════════════════

class EventType(str, Enum):
    OPERATION_CREATED = "OperationCreated"
    PROOF_SUBMITTED = "ProofSubmitted"
    CONSENSUS_REACHED = "ConsensusReached"
    OPERATION_EXECUTED = "OperationExecuted"
    OPERATION_CANCELLED = "OperationCancelled"
    OPERATION_EXPIRED = "OperationExpired"
    CIRCUIT_BREAKER_TRIPPED = "CircuitBreakerTripped"
    CIRCUIT_BREAKER_RECOVERED = "CircuitBreakerRecovered"


@dataclass
class Event:
    """An entry in the coordinator's append-only event log."""
    seq: int
    type: EventType
    timestamp: int
    operation_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "operation_id": self.operation_id,
            "data": dict(self.data),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Event":
        return cls(
            seq=int(d["seq"]),
            type=EventType(d["type"]),
            timestamp=int(d["timestamp"]),
            operation_id=d.get("operation_id"),
            data=dict(d.get("data", {})),
        )
