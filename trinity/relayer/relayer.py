"""
Trinity Relayer

Moves proof material from the ledgers to the coordinator.

    watcher (x3)   polls the coordinator event log; OperationCreated events
                   whose source ledger is the watcher's go on its queue
    worker  (x3)   takes an operation off its ledger's queue and fetches the
                   two other ledgers' proofs concurrently
    submit         one at a time per host ledger (the operation's source
                   ledger, where the coordinator call lands), each with the
                   next nonce from the persisted nonce table

Every submission is preceded by a fresh read of the operation, so a proof
that is already on record (or an operation that is no longer pending) is
skipped rather than resent. Timeouts and connection errors are retried with
exponential backoff; after the last attempt the failure is recorded and
surfaced through ``get_status``. Coordinator policy rejections are never
retried.
"""

import asyncio
import time
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from ..config.loader import RelayerConfig
from ..consensus.types import (
    ALL_LEDGERS,
    ChainProof,
    EventType,
    LedgerId,
    Operation,
    OperationStatus,
)
from ..exceptions import (
    DuplicateProofError,
    InvalidProofError,
    NonceError,
    PolicyRejection,
    TransientRelayError,
)
from ..logger import get_logger
from .client import CoordinatorClient
from .nonces import NonceTable
from .sources import ProofSource

logger = get_logger(__name__)

RETRYABLE = (TransientRelayError, httpx.TransportError, asyncio.TimeoutError)
MAX_RECORDED_FAILURES = 100


class RelayOutcome(str, Enum):
    SUBMITTED = "submitted"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class RelayFailure:
    """A proof that could not be relayed."""
    operation_id: str
    ledger: str
    stage: str
    error: str
    attempts: int
    retryable: bool
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class Relayer:
    """
    Args:
        client: Coordinator client
        sources: Proof source per ledger
        config: Retry, timeout, gas and queue settings
        nonces: Persisted nonce table. Built from ``config.nonce_file`` if omitted.
        submitter: Relayer address submissions are sent from
        sleep: Awaitable sleep; injectable so tests don't wait on backoff
    """

    def __init__(
        self,
        client: CoordinatorClient,
        sources: Dict[LedgerId, ProofSource],
        config: Optional[RelayerConfig] = None,
        nonces: Optional[NonceTable] = None,
        submitter: Optional[str] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.sources = {LedgerId(k): v for k, v in sources.items()}
        self.config = config or RelayerConfig()
        self.nonces = nonces if nonces is not None else NonceTable(self.config.nonce_file or None)
        self.submitter = submitter or self.config.submitter or "relayer"
        self._sleep = sleep

        self._queues: Dict[LedgerId, asyncio.Queue] = {}
        self._locks: Dict[LedgerId, asyncio.Lock] = {}
        self._cursors: Dict[LedgerId, int] = {l: 0 for l in ALL_LEDGERS}
        self._tracked: Dict[LedgerId, set] = {l: set() for l in ALL_LEDGERS}
        self._tasks: List[asyncio.Task] = []
        self._running = False

        self.failures: List[RelayFailure] = []
        self.stats = {
            "operations_seen": 0,
            "proofs_fetched": 0,
            "proofs_submitted": 0,
            "proofs_skipped": 0,
            "proofs_rejected": 0,
            "consensus_observed": 0,
            "errors": 0,
            "retries": 0,
        }

    # ── Lifecycle ───────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    def _lock_for(self, ledger: LedgerId) -> asyncio.Lock:
        # Created lazily so they bind to the running loop
        if ledger not in self._locks:
            self._locks[ledger] = asyncio.Lock()
        return self._locks[ledger]

    def _queue_for(self, ledger: LedgerId) -> asyncio.Queue:
        if ledger not in self._queues:
            self._queues[ledger] = asyncio.Queue(maxsize=self.config.queue_size)
        return self._queues[ledger]

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for ledger in ALL_LEDGERS:
            self._queue_for(ledger)
            self._tasks.append(asyncio.create_task(self._watch(ledger), name=f"watch-{ledger.name}"))
            self._tasks.append(asyncio.create_task(self._work(ledger), name=f"work-{ledger.name}"))
        logger.info(
            f"Relayer {self.submitter} started: sources for "
            f"{', '.join(l.name for l in self.sources)}"
        )

    async def stop(self) -> None:
        """Stop watchers and workers. In-flight retries end at their next await."""
        if not self._running:
            return
        self._running = False
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info(f"Relayer stopped: {self.stats}")

    async def run_until_idle(self) -> None:
        """Wait until every queued operation has been processed."""
        await asyncio.gather(*(q.join() for q in self._queues.values()))

    # ── Watchers ────────────────────────────────────────────────────

    async def poll_once(self, ledger: LedgerId) -> int:
        """
        Read new events for *ledger* and queue its new operations.
        Returns the number of operations queued.
        """
        queued = 0
        events = await self.client.get_events(after=self._cursors[ledger], limit=100)
        for event in events:
            self._cursors[ledger] = event.seq
            if event.type == EventType.OPERATION_CREATED:
                if LedgerId(int(event.data["source_ledger"])) != ledger:
                    continue
                self._tracked[ledger].add(event.operation_id)
                self.stats["operations_seen"] += 1
                await self._queue_for(ledger).put(event.operation_id)
                queued += 1
            elif event.type == EventType.CONSENSUS_REACHED:
                if event.operation_id in self._tracked[ledger]:
                    self._tracked[ledger].discard(event.operation_id)
                    self.stats["consensus_observed"] += 1
                    logger.info(f"Consensus reached for {event.operation_id}")
        return queued

    async def _watch(self, ledger: LedgerId) -> None:
        while self._running:
            try:
                await self.poll_once(ledger)
            except RETRYABLE as e:
                self.stats["errors"] += 1
                logger.warning(f"{ledger.name} watcher could not read events: {e}")
            await self._sleep(self.config.poll_interval_seconds)

    async def _work(self, ledger: LedgerId) -> None:
        queue = self._queue_for(ledger)
        while self._running:
            operation_id = await queue.get()
            try:
                await self.process_operation(operation_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.stats["errors"] += 1
                logger.error(f"Relaying {operation_id} failed: {e}", exc_info=True)
            finally:
                queue.task_done()

    # ── Relay ───────────────────────────────────────────────────────

    async def process_operation(self, operation_id: str) -> Dict[LedgerId, RelayOutcome]:
        """Fetch and submit the two non-source ledgers' proofs for one operation."""
        op = await self.client.get_operation(operation_id)
        if op.status != OperationStatus.PENDING:
            logger.debug(f"Skipping {operation_id}: status {op.status.name}")
            return {}

        targets = [l for l in ALL_LEDGERS if l != op.source_ledger and l in self.sources]
        outcomes = await asyncio.gather(*(self._relay_from(op, l) for l in targets))
        return dict(zip(targets, outcomes))

    async def _relay_from(self, op: Operation, ledger: LedgerId) -> RelayOutcome:
        source = self.sources[ledger]

        async def fetch() -> ChainProof:
            return await asyncio.wait_for(
                source.fetch_proof(op), timeout=self.config.fetch_timeout_seconds
            )

        try:
            proof = await self._with_retry(op.operation_id, ledger, "fetch", fetch)
        except InvalidProofError as e:
            self._record_failure(op.operation_id, ledger, "fetch", e, 1, retryable=False)
            return RelayOutcome.FAILED
        if proof is None:
            return RelayOutcome.FAILED
        self.stats["proofs_fetched"] += 1

        host = op.source_ledger
        async with self._lock_for(host):
            outcome = await self._with_retry(
                op.operation_id, ledger, "submit", lambda: self._submit_once(host, proof)
            )
        return outcome or RelayOutcome.FAILED

    async def _submit_once(self, host: LedgerId, proof: ChainProof) -> RelayOutcome:
        current = await self.client.get_operation(proof.operation_id)
        if current.status in (OperationStatus.CANCELLED, OperationStatus.EXPIRED):
            self.stats["proofs_skipped"] += 1
            logger.info(f"Not submitting {proof.ledger_id.name} proof: {proof.operation_id} is {current.status.name}")
            return RelayOutcome.SKIPPED
        if proof.ledger_id in current.confirmed_ledgers:
            self.stats["proofs_skipped"] += 1
            logger.debug(f"{proof.ledger_id.name} proof for {proof.operation_id} already on record")
            return RelayOutcome.SKIPPED

        gas_limit = await self._estimate_gas(proof)
        gas_price = int(await self.client.gas_price() * self.config.gas_price_multiplier)
        nonce = self.nonces.peek(host)

        try:
            op = await self.client.submit_proof(
                proof, self.submitter, host, nonce, gas_limit, gas_price
            )
        except NonceError:
            expected = await self.client.expected_nonce(self.submitter, host)
            if expected is not None:
                self.nonces.set(host, expected)
            raise
        except DuplicateProofError:
            self.nonces.advance(host)
            self.stats["proofs_skipped"] += 1
            logger.info(f"{proof.ledger_id.name} proof for {proof.operation_id} was submitted by someone else")
            return RelayOutcome.SKIPPED
        except (PolicyRejection, InvalidProofError) as e:
            self.nonces.advance(host)
            self.stats["proofs_rejected"] += 1
            self._record_failure(proof.operation_id, proof.ledger_id, "submit", e, 1, retryable=False)
            return RelayOutcome.REJECTED

        self.nonces.advance(host)
        self.stats["proofs_submitted"] += 1
        logger.info(
            f"Submitted {proof.ledger_id.name} proof for {proof.operation_id} to {host.name} "
            f"(nonce {nonce}, gas {gas_limit} @ {gas_price}, "
            f"{op.valid_proof_count} proof(s), {op.status.name})"
        )
        return RelayOutcome.SUBMITTED

    async def _estimate_gas(self, proof: ChainProof) -> int:
        """Estimate plus the configured buffer; the default limit if estimation fails."""
        try:
            estimate = await self.client.estimate_gas(proof)
        except RETRYABLE as e:
            logger.warning(f"Gas estimation failed, using default {self.config.default_gas_limit}: {e}")
            return self.config.default_gas_limit
        return estimate * (100 + self.config.gas_buffer_pct) // 100

    def backoff_delay(self, attempt: int) -> float:
        """Seconds to wait after failed *attempt* (1-based)."""
        delay_ms = min(
            self.config.retry_base_delay_ms * 2 ** (attempt - 1),
            self.config.retry_max_delay_ms,
        )
        return delay_ms / 1000

    async def _with_retry(self, operation_id: str, ledger: LedgerId, stage: str, fn):
        attempt = 1
        while True:
            try:
                return await fn()
            except RETRYABLE as e:
                if attempt >= self.config.max_retries:
                    self._record_failure(operation_id, ledger, stage, e, attempt, retryable=True)
                    return None
                delay = self.backoff_delay(attempt)
                self.stats["retries"] += 1
                logger.warning(
                    f"{stage} of {ledger.name} proof for {operation_id} failed "
                    f"(attempt {attempt}/{self.config.max_retries}), retrying in {delay:.1f}s: {e}"
                )
                await self._sleep(delay)
                attempt += 1

    def _record_failure(
        self,
        operation_id: str,
        ledger: LedgerId,
        stage: str,
        error: Exception,
        attempts: int,
        retryable: bool,
    ) -> None:
        self.stats["errors"] += 1
        failure = RelayFailure(
            operation_id=operation_id,
            ledger=LedgerId(ledger).name,
            stage=stage,
            error=f"{type(error).__name__}: {error}",
            attempts=attempts,
            retryable=retryable,
            timestamp=int(time.time()),
        )
        self.failures.append(failure)
        del self.failures[:-MAX_RECORDED_FAILURES]
        logger.error(
            f"Giving up on {stage} of {failure.ledger} proof for {operation_id} "
            f"after {attempts} attempt(s): {failure.error}"
        )

    # ── Status ──────────────────────────────────────────────────────

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "submitter": self.submitter,
            "stats": dict(self.stats),
            "nonces": self.nonces.to_dict(),
            "cursors": {l.name: c for l, c in self._cursors.items()},
            "queues": {l.name: q.qsize() for l, q in self._queues.items()},
            "failures": [f.to_dict() for f in self.failures[-20:]],
        }
