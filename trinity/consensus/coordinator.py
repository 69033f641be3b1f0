"""
Trinity Consensus Coordinator

The state machine that owns every operation. Users create operations and pay
a fee; each of the three ledgers' validators then vouches for the operation
with a Merkle proof. As soon as two distinct ledgers have valid proofs on
record the operation is verified and executed in the same call.

    PENDING ──(2nd valid proof)──▶ VERIFIED ──▶ EXECUTED
       │
       ├──(initiator cancels)──▶ CANCELLED   80% refund, 20% penalty
       └──(deadline passes)────▶ EXPIRED     full fee reclaimable

The coordinator is a serial state machine: every public mutating method runs
to completion before the next one starts and nothing here takes a lock. The
relayer serializes its calls per ledger; the HTTP API runs them on one event
loop.

Fees of executed operations accumulate in a FeeEpoch. Closing the epoch
splits the pool 80/20 between proof submitters (pro rata by accepted proofs
per ledger) and the protocol; registered validators then pull their share.
Payouts go through a PayoutSink and never revert a state transition: a
failed transfer is credited to ``pending_withdrawals`` instead.
"""

import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set, runtime_checkable

from ..config.loader import TrinityConfig
from ..constants import REQUIRED_CONFIRMATIONS
from ..crypto.merkle import operation_leaf, verify_merkle_proof
from ..crypto.signing import recover_signer
from ..exceptions import (
    AccountingInvariantError,
    AmountOutOfBoundsError,
    DuplicateProofError,
    DurationOutOfBoundsError,
    FatalError,
    InsufficientFeeError,
    InvalidOperationStateError,
    InvalidProofError,
    LedgerBindingError,
    OperationExpiredError,
    OperationNotFoundError,
    ProofPathTooLongError,
    StaleRootError,
    TransientRelayError,
    UnauthorizedError,
)
from ..logger import get_logger
from .anomaly import AnomalyDetector, CircuitBreakerStateStore
from .fees import FeeEngine, cancellation_refund, epoch_validator_reward, per_validator_reward, split_fee
from .types import (
    ALL_LEDGERS,
    ChainProof,
    CircuitBreakerState,
    Event,
    EventType,
    FeeEpoch,
    LedgerId,
    Operation,
    OperationStatus,
    compute_operation_id,
)

logger = get_logger(__name__)

EventListener = Callable[[Event], None]


# ══════════════════════════════════════════════════════════════════════
#  PAYOUTS
# ══════════════════════════════════════════════════════════════════════

@runtime_checkable
class PayoutSink(Protocol):
    """Moves value out of the coordinator. Returns False (or raises) on failure."""

    def transfer(self, address: str, amount: int, memo: str) -> bool:
        ...


class InMemoryPayoutSink:
    """
    Records transfers in a balance table.

    Addresses in ``rejecting`` refuse every transfer, which is how tests
    model a recipient contract that reverts.
    """

    def __init__(self, rejecting: Optional[Iterable[str]] = None):
        self.balances: Dict[str, int] = {}
        self.transfers: List[Dict[str, Any]] = []
        self.rejecting: Set[str] = {a.lower() for a in (rejecting or [])}

    def transfer(self, address: str, amount: int, memo: str) -> bool:
        if address.lower() in self.rejecting:
            return False
        key = address.lower()
        self.balances[key] = self.balances.get(key, 0) + amount
        self.transfers.append({"address": key, "amount": amount, "memo": memo})
        return True


# ══════════════════════════════════════════════════════════════════════
#  COORDINATOR
# ══════════════════════════════════════════════════════════════════════

class ConsensusCoordinator:
    """
    2-of-3 consensus over operations.

    Args:
        config: Full configuration; fees, merkle, operations and
                circuit_breaker sections are used here.
        breaker_state: Circuit breaker record to share with the detector.
        detector: Pre-built anomaly detector (overrides breaker_state).
        payout_sink: Where refunds and rewards go. In-memory by default.
        state_store: Persistence backend for the breaker record.
        clock: Returns unix time; injectable for tests.
    """

    def __init__(
        self,
        config: Optional[TrinityConfig] = None,
        breaker_state: Optional[CircuitBreakerState] = None,
        detector: Optional[AnomalyDetector] = None,
        payout_sink: Optional[PayoutSink] = None,
        state_store: Optional[CircuitBreakerStateStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or TrinityConfig()
        self._clock = clock
        self.fees = FeeEngine(self.config.fees)
        self.detector = detector or AnomalyDetector(
            self.config.circuit_breaker,
            state=breaker_state,
            state_store=state_store,
            clock=clock,
        )
        self.detector.add_listener(self._on_breaker_transition)
        self.detector.add_maintenance_hook(self.sweep_expired)

        self.payout_sink: PayoutSink = payout_sink or InMemoryPayoutSink()

        # ── operation state ──
        self._operations: Dict[str, Operation] = {}
        self._nonces: Dict[str, int] = {}

        # ── validator registry ──
        self._validators: Dict[LedgerId, Set[str]] = {l: set() for l in ALL_LEDGERS}
        for ledger in ALL_LEDGERS:
            for address in getattr(self.config.validators, ledger.name.lower()):
                self.register_validator(ledger, address)

        # ── accounting ──
        self.protocol_balance = 0
        self.pending_withdrawals: Dict[str, int] = {}
        self._fees_held = 0
        self._epoch = FeeEpoch(epoch_id=1, started_at=self.now())
        self._epochs: Dict[int, FeeEpoch] = {}

        # ── events ──
        self._events: List[Event] = []
        self._listeners: List[EventListener] = []

        self._stats = {
            "operations_created": 0,
            "proofs_accepted": 0,
            "proofs_rejected": 0,
            "operations_executed": 0,
            "operations_cancelled": 0,
            "operations_expired": 0,
            "payouts_deferred": 0,
        }

    # ── Helpers ─────────────────────────────────────────────────────

    def now(self) -> int:
        return int(self._clock())

    @property
    def breaker_state(self) -> CircuitBreakerState:
        return self.detector.state

    @property
    def current_epoch(self) -> FeeEpoch:
        return self._epoch

    @contextmanager
    def _mutation(self):
        """
        Wraps every public mutating call: fatal errors halt the coordinator,
        and the call is counted towards the Tier-2 / Tier-3 schedule.
        """
        try:
            yield
        except FatalError as exc:
            if isinstance(exc, AccountingInvariantError):
                reason = "accounting invariant violation"
            else:
                reason = f"fatal error: {exc}"
            logger.critical(f"Halting coordinator: {exc}")
            self.detector.halt(reason)
            raise
        finally:
            self.detector.tick()

    def _get(self, operation_id: str) -> Operation:
        op = self._operations.get(str(operation_id).lower())
        if op is None:
            raise OperationNotFoundError(f"operation {operation_id} not found")
        return op

    def _emit(self, event_type: EventType, operation_id: Optional[str] = None, **data) -> Event:
        event = Event(
            seq=len(self._events) + 1,
            type=event_type,
            timestamp=self.now(),
            operation_id=operation_id,
            data=data,
        )
        self._events.append(event)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as exc:
                logger.error(f"Event listener failed on {event_type.value}: {exc}", exc_info=True)
        return event

    def _payout(self, address: str, amount: int, memo: str) -> bool:
        """Push *amount* to *address*; on failure credit it for a later withdraw."""
        if amount <= 0:
            return True
        try:
            ok = bool(self.payout_sink.transfer(address, amount, memo))
        except Exception as exc:
            logger.warning(f"Payout of {amount} to {address} raised: {exc}", exc_info=True)
            ok = False
        if not ok:
            key = address.lower()
            self.pending_withdrawals[key] = self.pending_withdrawals.get(key, 0) + amount
            self._stats["payouts_deferred"] += 1
            logger.warning(f"Payout of {amount} to {address} deferred to pending withdrawals ({memo})")
        return ok

    def _on_breaker_transition(self, kind: str, state: CircuitBreakerState) -> None:
        event_type = (
            EventType.CIRCUIT_BREAKER_TRIPPED if kind == "tripped"
            else EventType.CIRCUIT_BREAKER_RECOVERED
        )
        self._emit(event_type, None, **state.to_dict())

    # ── Validator registry ──────────────────────────────────────────

    def register_validator(self, ledger_id, address: str) -> None:
        ledger = self.detector.check_ledger(ledger_id)
        self._validators[ledger].add(address.lower())
        logger.info(f"Registered {ledger.name} validator {address}")

    def validators_for(self, ledger_id) -> List[str]:
        ledger = self.detector.check_ledger(ledger_id)
        return sorted(self._validators[ledger])

    # ── Create ──────────────────────────────────────────────────────

    def create_operation(
        self,
        initiator: str,
        source_ledger,
        destination_ledger,
        amount: int,
        paid_value: int,
        prioritize_speed: bool = False,
        prioritize_security: bool = False,
        target_contract: str = "",
        duration: Optional[int] = None,
    ) -> Operation:
        """
        Register a new operation and charge its fee.

        Any value paid above the fee is refunded right away.

        Raises:
            CircuitBreakerActiveError, RateLimitedError, LedgerBindingError,
            AmountOutOfBoundsError, DurationOutOfBoundsError, InsufficientFeeError
        """
        with self._mutation():
            self.detector.check()
            source = self.detector.check_ledger(source_ledger)
            destination = self.detector.check_ledger(destination_ledger)
            if source == destination:
                raise LedgerBindingError("source and destination ledger must differ")
            self.detector.check_operation_rate()

            bounds = self.config.operations
            if not bounds.min_amount <= amount <= bounds.max_amount:
                raise AmountOutOfBoundsError(
                    f"amount {amount} outside [{bounds.min_amount}, {bounds.max_amount}]"
                )
            if duration is None:
                duration = bounds.default_duration_seconds
            if not bounds.min_duration_seconds <= duration <= bounds.max_duration_seconds:
                raise DurationOutOfBoundsError(
                    f"duration {duration}s outside "
                    f"[{bounds.min_duration_seconds}, {bounds.max_duration_seconds}]"
                )

            fee = self.fees.price_operation(prioritize_speed, prioritize_security)
            if paid_value < fee:
                raise InsufficientFeeError(f"paid {paid_value}, fee is {fee}")

            key = initiator.lower()
            nonce = self._nonces.get(key, 0)
            operation_id = compute_operation_id(
                initiator, source, destination, target_contract, amount, nonce
            )
            if operation_id in self._operations:
                raise FatalError(f"operation id collision on {operation_id}")

            now = self.now()
            op = Operation(
                operation_id=operation_id,
                initiator=initiator,
                source_ledger=source,
                destination_ledger=destination,
                target_contract=target_contract,
                amount=amount,
                fee=fee,
                nonce=nonce,
                created_at=now,
                expires_at=now + duration,
                prioritize_speed=prioritize_speed,
                prioritize_security=prioritize_security,
            )
            self._nonces[key] = nonce + 1
            self._operations[operation_id] = op
            self._fees_held += fee
            self._stats["operations_created"] += 1
            self.detector.record_operation(amount)

            excess = paid_value - fee
            if excess:
                self._payout(initiator, excess, f"excess fee for {operation_id}")

            self._emit(
                EventType.OPERATION_CREATED,
                operation_id,
                initiator=initiator,
                source_ledger=int(source),
                destination_ledger=int(destination),
                amount=str(amount),
                fee=str(fee),
                expires_at=op.expires_at,
            )
            logger.info(
                f"Operation {operation_id} created: {source.name} -> {destination.name}, "
                f"amount {amount}, fee {fee}"
            )
            return op

    # ── Proofs ──────────────────────────────────────────────────────

    def submit_proof(
        self,
        operation_id: str,
        ledger_id,
        merkle_root: str,
        sibling_path: List[str],
        block_reference: str = "",
        timestamp: Optional[int] = None,
        signature: str = "",
        submitter: str = "",
        leaf: Optional[str] = None,
    ) -> Operation:
        """
        Record one ledger's proof for an operation.

        ``timestamp`` is when the ledger committed ``merkle_root``; a proof
        without one is rejected as stale.

        The leaf is recomputed from the operation id; a caller-supplied
        ``leaf`` that differs is an invalid proof. When this proof is the
        second distinct ledger's, the operation is verified and executed
        before returning. A third ledger's proof on an executed operation is
        recorded without a status change.

        Raises:
            CircuitBreakerActiveError, LedgerBindingError, OperationNotFoundError,
            OperationExpiredError, InvalidOperationStateError, DuplicateProofError,
            ProofPathTooLongError, StaleRootError, InvalidProofError
        """
        with self._mutation():
            self.detector.check()
            ledger = self.detector.check_ledger(ledger_id)
            op = self._get(operation_id)
            now = self.now()

            if op.status == OperationStatus.EXPIRED:
                raise OperationExpiredError(f"operation {op.operation_id} expired")
            if op.status == OperationStatus.CANCELLED:
                raise InvalidOperationStateError(f"operation {op.operation_id} was cancelled")
            if op.status == OperationStatus.PENDING and op.is_expired(now):
                self._expire(op)
                raise OperationExpiredError(f"operation {op.operation_id} expired")

            if ledger in op.confirmed_ledgers:
                raise DuplicateProofError(
                    f"{ledger.name} already confirmed operation {op.operation_id}"
                )

            merkle = self.config.merkle
            if sibling_path is None:
                sibling_path = []
            if len(sibling_path) > merkle.max_depth:
                raise ProofPathTooLongError(
                    f"sibling path of {len(sibling_path)} exceeds max depth {merkle.max_depth}"
                )

            if not timestamp:
                raise StaleRootError("root timestamp is required")
            committed_at = int(timestamp)
            if committed_at > now + merkle.max_future_drift_seconds:
                raise StaleRootError(f"root timestamp {committed_at} is in the future")
            if now - committed_at > merkle.root_validity_seconds:
                raise StaleRootError(
                    f"root committed {now - committed_at}s ago, "
                    f"validity is {merkle.root_validity_seconds}s"
                )

            try:
                expected_leaf = operation_leaf(op.operation_id)
                registered = self._validators[ledger]
                if registered:
                    signer = recover_signer(
                        signature, op.operation_id, ledger, merkle_root, committed_at
                    )
                    self.detector.check_signer(ledger, signer, registered)
                if leaf is not None and str(leaf).lower() != expected_leaf:
                    raise InvalidProofError("leaf does not match the operation")
                if not verify_merkle_proof(expected_leaf, sibling_path, merkle_root, merkle.max_depth):
                    raise InvalidProofError("merkle proof does not verify against the root")
            except InvalidProofError as exc:
                self.detector.record_proof(False)
                self._stats["proofs_rejected"] += 1
                logger.warning(
                    f"Invalid {ledger.name} proof for {op.operation_id} from "
                    f"{submitter or 'unknown'}: {exc}"
                )
                raise

            self.detector.record_proof(True)
            op.confirmed_ledgers.add(ledger)
            self._roll_epoch_if_due(now)
            self._epoch.record_proof(ledger)
            self._stats["proofs_accepted"] += 1

            self._emit(
                EventType.PROOF_SUBMITTED,
                op.operation_id,
                ledger_id=int(ledger),
                submitter=submitter,
                block_reference=block_reference,
                merkle_root=merkle_root,
                valid_proof_count=op.valid_proof_count,
            )
            logger.info(
                f"{ledger.name} proof accepted for {op.operation_id} "
                f"({op.valid_proof_count}/{REQUIRED_CONFIRMATIONS})"
            )

            if op.status == OperationStatus.PENDING and op.valid_proof_count >= REQUIRED_CONFIRMATIONS:
                op.status = OperationStatus.VERIFIED
                self._emit(
                    EventType.CONSENSUS_REACHED,
                    op.operation_id,
                    confirmed_ledgers=sorted(int(l) for l in op.confirmed_ledgers),
                )
                self._execute(op)
            return op

    def submit_chain_proof(self, proof: ChainProof) -> Operation:
        return self.submit_proof(
            proof.operation_id,
            proof.ledger_id,
            proof.merkle_root,
            proof.sibling_path,
            block_reference=proof.block_reference,
            timestamp=proof.timestamp,
            signature=proof.signature,
            submitter=proof.submitter,
            leaf=proof.leaf,
        )

    def _roll_epoch_if_due(self, now: int) -> None:
        if now - self._epoch.started_at >= self.config.fees.epoch_duration_seconds:
            self._close_epoch()

    def _execute(self, op: Operation) -> None:
        now = self.now()

        op.status = OperationStatus.EXECUTED
        op.executed_at = now
        self._fees_held -= op.fee
        self._epoch.fee_pool += op.fee
        self._stats["operations_executed"] += 1
        self._emit(
            EventType.OPERATION_EXECUTED,
            op.operation_id,
            fee=str(op.fee),
            epoch_id=self._epoch.epoch_id,
        )
        logger.info(f"Operation {op.operation_id} EXECUTED")

    # ── Cancel / expire ─────────────────────────────────────────────

    def cancel_operation(self, operation_id: str, caller: str) -> Operation:
        """
        Initiator cancels a pending operation before its deadline.
        80% of the fee is refunded, the rest goes to the protocol.
        """
        with self._mutation():
            self.detector.check()
            op = self._get(operation_id)
            if caller.lower() != op.initiator.lower():
                raise UnauthorizedError("only the initiator can cancel an operation")
            if op.status != OperationStatus.PENDING:
                raise InvalidOperationStateError(
                    f"cannot cancel operation in status {op.status.name}"
                )
            if op.is_expired(self.now()):
                self._expire(op)
                raise OperationExpiredError(f"operation {op.operation_id} expired")

            refund, penalty = cancellation_refund(op.fee)
            op.status = OperationStatus.CANCELLED
            op.cancelled_at = self.now()
            self._fees_held -= op.fee
            self.protocol_balance += penalty
            self._stats["operations_cancelled"] += 1
            self._payout(op.initiator, refund, f"cancellation refund for {op.operation_id}")

            self._emit(
                EventType.OPERATION_CANCELLED,
                op.operation_id,
                refund=str(refund),
                penalty=str(penalty),
            )
            logger.info(f"Operation {op.operation_id} CANCELLED: refund {refund}, penalty {penalty}")
            return op

    def _expire(self, op: Operation) -> None:
        op.status = OperationStatus.EXPIRED
        self._stats["operations_expired"] += 1
        self._emit(EventType.OPERATION_EXPIRED, op.operation_id, expires_at=op.expires_at)
        logger.info(f"Operation {op.operation_id} EXPIRED with {op.valid_proof_count} proof(s)")

    def sweep_expired(self, now: Optional[int] = None) -> int:
        """Mark every pending operation past its deadline as expired."""
        now = self.now() if now is None else now
        expired = [
            op for op in self._operations.values()
            if op.status == OperationStatus.PENDING and now > op.expires_at
        ]
        for op in expired:
            self._expire(op)
        return len(expired)

    def reclaim_expired(self, operation_id: str, caller: str) -> int:
        """Initiator recovers the full fee of an expired operation, once."""
        with self._mutation():
            self.detector.check()
            op = self._get(operation_id)
            if caller.lower() != op.initiator.lower():
                raise UnauthorizedError("only the initiator can reclaim the fee")
            if op.status == OperationStatus.PENDING and op.is_expired(self.now()):
                self._expire(op)
            if op.status != OperationStatus.EXPIRED:
                raise InvalidOperationStateError(
                    f"fee can only be reclaimed from an expired operation, status is {op.status.name}"
                )
            if op.fee_reclaimed:
                raise InvalidOperationStateError("fee already reclaimed")

            op.fee_reclaimed = True
            self._fees_held -= op.fee
            self._payout(op.initiator, op.fee, f"expired fee for {op.operation_id}")
            return op.fee

    # ── Epoch settlement ────────────────────────────────────────────

    def close_epoch(self) -> FeeEpoch:
        """Settle the current epoch and open the next one."""
        with self._mutation():
            self.detector.check()
            return self._close_epoch()

    def _close_epoch(self) -> FeeEpoch:
        epoch = self._epoch
        pool = epoch.fee_pool
        split = split_fee(pool)

        distributed = 0
        unclaimable = 0
        for ledger in ALL_LEDGERS:
            reward = epoch_validator_reward(
                pool, epoch.proof_count_by_ledger.get(ledger, 0), epoch.total_proof_count
            )
            validators = sorted(self._validators[ledger])
            epoch.validators[ledger] = validators
            # nobody could ever claim it
            if not validators:
                epoch.ledger_rewards[ledger] = 0
                unclaimable += reward
                continue
            epoch.ledger_rewards[ledger] = reward
            distributed += reward

        remainder = split.validator_share - distributed - unclaimable
        if remainder < 0:
            raise AccountingInvariantError(
                f"epoch {epoch.epoch_id} rewards {distributed + unclaimable} exceed validator share {split.validator_share}"
            )
        to_protocol = split.protocol_share + split.dust + remainder + unclaimable
        if distributed + to_protocol != pool:
            raise AccountingInvariantError(
                f"epoch {epoch.epoch_id} settlement {distributed} + {to_protocol} != {pool}"
            )

        self.protocol_balance += to_protocol
        epoch.distributed = True
        epoch.closed_at = self.now()
        self._epochs[epoch.epoch_id] = epoch
        self._epoch = FeeEpoch(epoch_id=epoch.epoch_id + 1, started_at=epoch.closed_at)

        logger.info(
            f"Epoch {epoch.epoch_id} closed: pool {pool}, validators {distributed}, "
            f"protocol {to_protocol}"
        )
        return epoch

    def get_epoch(self, epoch_id: int) -> FeeEpoch:
        if epoch_id == self._epoch.epoch_id:
            return self._epoch
        epoch = self._epochs.get(epoch_id)
        if epoch is None:
            raise InvalidOperationStateError(f"unknown epoch {epoch_id}")
        return epoch

    def claim_epoch_reward(self, epoch_id: int, ledger_id, address: str) -> int:
        """
        A validator pulls its share of its ledger's epoch reward. The ledger
        reward is split evenly among the validators registered at close.
        """
        with self._mutation():
            self.detector.check()
            ledger = self.detector.check_ledger(ledger_id)
            epoch = self._epochs.get(epoch_id)
            if epoch is None or not epoch.distributed:
                raise InvalidOperationStateError(f"epoch {epoch_id} is not closed")

            validators = epoch.validators.get(ledger, [])
            key = address.lower()
            if key not in validators:
                raise UnauthorizedError(f"{address} was not a {ledger.name} validator in epoch {epoch_id}")

            claimed = epoch.claimed.setdefault(ledger, set())
            if key in claimed:
                raise InvalidOperationStateError(f"{address} already claimed epoch {epoch_id}")

            reward, dust = per_validator_reward(epoch.ledger_rewards.get(ledger, 0), len(validators))
            if not claimed:
                self.protocol_balance += dust
            claimed.add(key)
            self._payout(address, reward, f"epoch {epoch_id} {ledger.name} reward")
            return reward

    def withdraw(self, address: str) -> int:
        """Pull a balance whose push payout failed earlier."""
        with self._mutation():
            self.detector.check()
            key = address.lower()
            amount = self.pending_withdrawals.pop(key, 0)
            if amount == 0:
                raise InvalidOperationStateError(f"nothing to withdraw for {address}")
            try:
                ok = bool(self.payout_sink.transfer(address, amount, "withdrawal"))
            except Exception as exc:
                logger.warning(f"Withdrawal of {amount} to {address} raised: {exc}", exc_info=True)
                ok = False
            if not ok:
                self.pending_withdrawals[key] = amount
                raise TransientRelayError(f"withdrawal of {amount} to {address} failed, retry later")
            return amount

    # ── Circuit breaker controls ────────────────────────────────────

    def emergency_pause(self, caller: str, reason: str = "emergency pause") -> None:
        self.detector.emergency_pause(caller, reason)

    def emergency_resume(self, caller: str) -> None:
        self.detector.emergency_resume(caller)

    def approve_resume(self, ledger_id, caller: str) -> bool:
        """A registered validator of *ledger_id* votes to lift an automatic pause."""
        ledger = self.detector.check_ledger(ledger_id)
        if caller.lower() not in self._validators[ledger]:
            raise UnauthorizedError(f"{caller} is not a registered {ledger.name} validator")
        return self.detector.approve_resume(ledger)

    # ── Read interface ──────────────────────────────────────────────

    def get_operation(self, operation_id: str) -> Operation:
        return self._get(operation_id)

    def has_consensus(self, operation_id: str) -> bool:
        return self._get(operation_id).has_consensus

    def list_operations(self, status: Optional[OperationStatus] = None) -> List[Operation]:
        ops = list(self._operations.values())
        if status is not None:
            ops = [op for op in ops if op.status == status]
        return ops

    def get_events(
        self,
        after: int = 0,
        limit: int = 100,
        event_type: Optional[EventType] = None,
    ) -> List[Event]:
        """Events with sequence number greater than *after*, oldest first."""
        result = []
        for event in self._events[max(after, 0):]:
            if event_type is not None and event.type != event_type:
                continue
            result.append(event)
            if len(result) >= limit:
                break
        return result

    def subscribe(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def get_circuit_breaker_state(self) -> Dict[str, Any]:
        return self.detector.get_status()

    def get_stats(self) -> Dict[str, Any]:
        by_status = {s.name: 0 for s in OperationStatus}
        for op in self._operations.values():
            by_status[op.status.name] += 1
        return {
            **self._stats,
            "operations_by_status": by_status,
            "fees_held": str(self._fees_held),
            "protocol_balance": str(self.protocol_balance),
            "pending_withdrawals": str(sum(self.pending_withdrawals.values())),
            "current_epoch": self._epoch.to_dict(),
            "closed_epochs": len(self._epochs),
            "events": len(self._events),
            "paused": self.detector.is_paused,
            "validators": {l.name: len(v) for l, v in self._validators.items()},
        }
