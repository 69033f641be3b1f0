"""
Relayer tests.

The relayer runs against an in-process coordinator and stub validators that
share one fake clock. Backoff sleeps are recorded instead of awaited.
"""

import asyncio
import json
import os
import sys
from unittest.mock import AsyncMock

import pytest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from trinity.config import RelayerConfig, TrinityConfig
from trinity.consensus import ALL_LEDGERS, ConsensusCoordinator, LedgerId, Operation, OperationStatus
from trinity.exceptions import InvalidProofError, TransientRelayError
from trinity.relayer import (
    InProcessCoordinatorClient,
    NonceTable,
    RelayOutcome,
    Relayer,
    StubLedgerValidator,
)
from trinity.relayer.sources import ProofSource

T0 = 1_700_000_000
ETH, SOL, TON = LedgerId.ETHEREUM, LedgerId.SOLANA, LedgerId.TON
KEYS = {ETH: "0x" + "01" * 32, SOL: "0x" + "02" * 32, TON: "0x" + "03" * 32}
ALICE = "0x" + "aa" * 20
RELAYER = "0x" + "5e" * 20


class FakeClock:
    def __init__(self, t: int = T0):
        self.t = t

    def __call__(self) -> float:
        return self.t


class RecordingSleep:
    """Stands in for asyncio.sleep; optional hook runs on every call."""

    def __init__(self, hook=None):
        self.delays = []
        self.hook = hook

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.hook:
            self.hook()


class Setup:
    def __init__(self, sleep=None, nonces=None, register=True, **relayer_cfg):
        self.clock = FakeClock()
        cfg = TrinityConfig()
        cfg.fees.base_fee = 1
        self.coordinator = ConsensusCoordinator(cfg, clock=self.clock)
        self.validators = {
            l: StubLedgerValidator(l, KEYS[l], clock=self.clock) for l in ALL_LEDGERS
        }
        if register:
            for ledger, v in self.validators.items():
                self.coordinator.register_validator(ledger, v.address)
        self.client = InProcessCoordinatorClient(self.coordinator)
        self.sleep = sleep or RecordingSleep()
        self.relayer = Relayer(
            self.client,
            self.validators,
            RelayerConfig(**{"nonce_file": "", "max_retries": 3, **relayer_cfg}),
            nonces=nonces if nonces is not None else NonceTable(),
            submitter=RELAYER,
            sleep=self.sleep,
        )

    def create(self, source=ETH, destination=SOL) -> Operation:
        return self.coordinator.create_operation(ALICE, source, destination, 100, 1)


# ══════════════════════════════════════════════════════════════════════
#  SECTION 1: RELAY
# ══════════════════════════════════════════════════════════════════════

class TestRelay:

    @pytest.mark.asyncio
    async def test_poll_queues_operations_of_own_ledger(self):
        s = Setup()
        s.create(source=ETH)
        s.create(source=TON, destination=ETH)
        assert await s.relayer.poll_once(ETH) == 1
        assert await s.relayer.poll_once(ETH) == 0
        assert await s.relayer.poll_once(TON) == 1
        assert s.relayer.stats["operations_seen"] == 2

    @pytest.mark.asyncio
    async def test_two_other_ledgers_reach_consensus(self):
        s = Setup()
        op = s.create(source=ETH)
        outcomes = await s.relayer.process_operation(op.operation_id)
        assert outcomes == {SOL: RelayOutcome.SUBMITTED, TON: RelayOutcome.SUBMITTED}
        assert op.status == OperationStatus.EXECUTED
        assert op.confirmed_ledgers == {SOL, TON}
        assert s.relayer.stats["proofs_submitted"] == 2

    @pytest.mark.asyncio
    async def test_submissions_carry_nonce_and_gas(self):
        s = Setup()
        op = s.create(source=SOL, destination=TON)
        await s.relayer.process_operation(op.operation_id)
        assert sorted(x["nonce"] for x in s.client.submissions) == [0, 1]
        assert {x["host_ledger"] for x in s.client.submissions} == {int(SOL)}
        assert all(x["gas_limit"] == 72_000 for x in s.client.submissions)
        assert all(x["gas_price"] == 1_200_000_000 for x in s.client.submissions)
        assert s.relayer.nonces.peek(SOL) == 2

    @pytest.mark.asyncio
    async def test_gas_estimation_failure_uses_default(self):
        s = Setup()
        s.client.estimate_gas = AsyncMock(side_effect=TransientRelayError("node down"))
        op = s.create()
        await s.relayer.process_operation(op.operation_id)
        assert all(x["gas_limit"] == 300_000 for x in s.client.submissions)

    @pytest.mark.asyncio
    async def test_consensus_event_observed(self):
        s = Setup()
        op = s.create(source=ETH)
        await s.relayer.poll_once(ETH)
        await s.relayer.process_operation(op.operation_id)
        await s.relayer.poll_once(ETH)
        assert s.relayer.stats["consensus_observed"] == 1

    @pytest.mark.asyncio
    async def test_start_and_stop(self):
        s = Setup(sleep=asyncio.sleep, poll_interval_seconds=0.01)
        op = s.create(source=TON, destination=SOL)
        await s.relayer.start()
        try:
            for _ in range(200):
                if s.relayer.stats["consensus_observed"]:
                    break
                await asyncio.sleep(0.01)
            await s.relayer.run_until_idle()
        finally:
            await s.relayer.stop()
        assert op.status == OperationStatus.EXECUTED
        assert s.relayer.stats["consensus_observed"] == 1
        assert not s.relayer.is_running


# ══════════════════════════════════════════════════════════════════════
#  SECTION 2: IDEMPOTENCY
# ══════════════════════════════════════════════════════════════════════

class TestIdempotency:

    @pytest.mark.asyncio
    async def test_confirmed_ledger_is_skipped(self):
        s = Setup()
        op = s.create(source=ETH)
        s.coordinator.submit_chain_proof(s.validators[SOL].proof_for(op.operation_id))
        outcomes = await s.relayer.process_operation(op.operation_id)
        assert outcomes[SOL] == RelayOutcome.SKIPPED
        assert outcomes[TON] == RelayOutcome.SUBMITTED
        assert len(s.client.submissions) == 1

    @pytest.mark.asyncio
    async def test_terminal_operation_is_ignored(self):
        s = Setup()
        op = s.create()
        s.coordinator.cancel_operation(op.operation_id, ALICE)
        assert await s.relayer.process_operation(op.operation_id) == {}
        assert s.client.submissions == []

    @pytest.mark.asyncio
    async def test_duplicate_from_coordinator_counts_as_done(self):
        s = Setup()
        op = s.create(source=ETH)
        stale = Operation.from_dict(op.to_dict())
        # another relayer lands the same proof between our read and our send
        s.coordinator.submit_chain_proof(s.validators[SOL].proof_for(op.operation_id))
        s.client.get_operation = AsyncMock(return_value=stale)

        assert await s.relayer._relay_from(stale, SOL) == RelayOutcome.SKIPPED
        assert s.relayer.failures == []
        # the reverted transaction still used the nonce
        assert s.relayer.nonces.peek(ETH) == 1
        assert await s.client.expected_nonce(RELAYER, ETH) == 1

    @pytest.mark.asyncio
    async def test_processing_twice_submits_once(self):
        s = Setup()
        op = s.create()
        await s.relayer.process_operation(op.operation_id)
        await s.relayer.process_operation(op.operation_id)
        assert len(s.client.submissions) == 2
        assert op.valid_proof_count == 2


# ══════════════════════════════════════════════════════════════════════
#  SECTION 3: RETRY / FAILURE
# ══════════════════════════════════════════════════════════════════════

class TestRetry:

    def test_backoff_schedule(self):
        relayer = Setup(retry_base_delay_ms=1000, retry_max_delay_ms=10_000).relayer
        assert [relayer.backoff_delay(n) for n in (1, 2, 3, 4, 5)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        s = Setup()
        s.validators[TON].online = False
        op = s.create(source=ETH)
        outcomes = await s.relayer.process_operation(op.operation_id)

        assert outcomes[TON] == RelayOutcome.FAILED
        assert outcomes[SOL] == RelayOutcome.SUBMITTED
        assert s.validators[TON].fetches == 3
        assert s.sleep.delays == [1.0, 2.0]
        assert s.relayer.stats["retries"] == 2

        failure = s.relayer.failures[0]
        assert (failure.ledger, failure.stage, failure.attempts, failure.retryable) == ("TON", "fetch", 3, True)
        assert s.relayer.get_status()["failures"][0]["operation_id"] == op.operation_id
        assert op.status == OperationStatus.PENDING

    @pytest.mark.asyncio
    async def test_transient_error_recovers(self):
        holder = {}
        sleep = RecordingSleep(hook=lambda: setattr(holder["ton"], "online", True))
        s = Setup(sleep=sleep)
        holder["ton"] = s.validators[TON]
        s.validators[TON].online = False

        op = s.create(source=ETH)
        outcomes = await s.relayer.process_operation(op.operation_id)
        assert outcomes[TON] == RelayOutcome.SUBMITTED
        assert op.status == OperationStatus.EXECUTED
        assert s.relayer.stats["retries"] == 1
        assert s.relayer.failures == []

    @pytest.mark.asyncio
    async def test_nonce_mismatch_resyncs(self):
        nonces = NonceTable()
        nonces.set(ETH, 5)
        s = Setup(nonces=nonces)
        op = s.create(source=ETH)
        await s.relayer.process_operation(op.operation_id)
        assert op.status == OperationStatus.EXECUTED
        assert [x["nonce"] for x in s.client.submissions] == [0, 1]
        assert s.relayer.nonces.peek(ETH) == 2
        assert s.relayer.stats["retries"] == 1

    @pytest.mark.asyncio
    async def test_coordinator_rejection_is_not_retried(self):
        s = Setup(register=False)
        # SOL proofs must be signed by a key the relayer's stub does not hold
        s.coordinator.register_validator(SOL, "0x" + "77" * 20)
        op = s.create(source=ETH)
        outcomes = await s.relayer.process_operation(op.operation_id)

        assert outcomes[SOL] == RelayOutcome.REJECTED
        assert outcomes[TON] == RelayOutcome.SUBMITTED
        assert s.sleep.delays == []
        failure = s.relayer.failures[0]
        assert failure.stage == "submit"
        assert not failure.retryable
        assert "InvalidSignatureError" in failure.error
        assert s.relayer.nonces.peek(ETH) == 2

    @pytest.mark.asyncio
    async def test_invalid_proof_from_source_is_not_retried(self):
        s = Setup()
        broken = AsyncMock(spec=ProofSource)
        broken.ledger = TON
        broken.fetch_proof.side_effect = InvalidProofError("validator answered for another ledger")
        s.relayer.sources[TON] = broken

        op = s.create(source=ETH)
        outcomes = await s.relayer.process_operation(op.operation_id)
        assert outcomes[TON] == RelayOutcome.FAILED
        assert broken.fetch_proof.await_count == 1
        assert s.relayer.stats["retries"] == 0

    @pytest.mark.asyncio
    async def test_fetch_timeout_is_retried(self):
        s = Setup(fetch_timeout_seconds=0.01)

        class Slow(ProofSource):
            async def fetch_proof(self, operation):
                await asyncio.sleep(1)

        s.relayer.sources[TON] = Slow(TON)
        op = s.create(source=ETH)
        outcomes = await s.relayer.process_operation(op.operation_id)
        assert outcomes[TON] == RelayOutcome.FAILED
        assert s.relayer.failures[0].attempts == 3


# ══════════════════════════════════════════════════════════════════════
#  SECTION 4: NONCE PERSISTENCE
# ══════════════════════════════════════════════════════════════════════

class TestNonceTable:

    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "nonces.json"
        table = NonceTable(str(path))
        table.advance(ETH)
        table.advance(ETH)
        table.advance(TON)

        assert json.loads(path.read_text()) == {"1": 2, "3": 1}
        reloaded = NonceTable(str(path))
        assert reloaded.peek(ETH) == 2
        assert reloaded.peek(SOL) == 0
        assert reloaded.peek(TON) == 1

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "data" / "nonces.json"
        NonceTable(str(path)).advance(SOL)
        assert path.exists()

    def test_negative_nonce_rejected(self):
        with pytest.raises(ValueError):
            NonceTable().set(ETH, -1)

    def test_memory_only(self):
        table = NonceTable()
        assert table.path is None
        assert table.advance(ETH) == 1

    @pytest.mark.asyncio
    async def test_relayer_restart_continues_sequence(self, tmp_path):
        path = str(tmp_path / "nonces.json")
        s = Setup(nonces=NonceTable(path))
        first = s.create(source=ETH)
        await s.relayer.process_operation(first.operation_id)

        restarted = Relayer(
            s.client, s.validators, RelayerConfig(nonce_file=path),
            submitter=RELAYER, sleep=RecordingSleep(),
        )
        second = s.create(source=ETH)
        await restarted.process_operation(second.operation_id)

        assert second.status == OperationStatus.EXECUTED
        assert sorted(x["nonce"] for x in s.client.submissions) == [0, 1, 2, 3]
        assert restarted.stats["retries"] == 0
