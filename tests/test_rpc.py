"""
HTTP API tests.

The coordinator API is exercised with FastAPI's TestClient; the HTTP relay
path (HttpCoordinatorClient + HttpProofSource) runs over httpx's ASGI
transport against the real apps, so no sockets are opened.
"""

import os
import sys

import httpx
import pytest
from fastapi.testclient import TestClient

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from trinity.config import RelayerConfig, TrinityConfig
from trinity.consensus import ALL_LEDGERS, ConsensusCoordinator, LedgerId, OperationStatus
from trinity.exceptions import (
    CircuitBreakerActiveError,
    DuplicateProofError,
    InvalidProofError,
    OperationNotFoundError,
    TransientRelayError,
)
from trinity.relayer import HttpCoordinatorClient, HttpProofSource, NonceTable, Relayer, StubLedgerValidator
from trinity.rpc import create_app, create_validator_app, status_for

T0 = 1_700_000_000
ETH, SOL, TON = LedgerId.ETHEREUM, LedgerId.SOLANA, LedgerId.TON
KEYS = {ETH: "0x" + "01" * 32, SOL: "0x" + "02" * 32, TON: "0x" + "03" * 32}
ALICE = "0x" + "aa" * 20
CONTROLLER = "0x" + "c0" * 20


def _clock():
    return T0


def _make_coordinator() -> ConsensusCoordinator:
    cfg = TrinityConfig()
    cfg.fees.base_fee = 1000
    cfg.circuit_breaker.emergency_controller = CONTROLLER
    return ConsensusCoordinator(cfg, clock=_clock)


def _make_validators():
    return {l: StubLedgerValidator(l, KEYS[l], clock=_clock) for l in ALL_LEDGERS}


CREATE_BODY = {
    "initiator": ALICE,
    "source_ledger": "ethereum",
    "destination_ledger": 2,
    "amount": "100",
    "paid_value": "1000",
}


@pytest.fixture
def coordinator():
    return _make_coordinator()


@pytest.fixture
def validators(coordinator):
    vals = _make_validators()
    for ledger, v in vals.items():
        coordinator.register_validator(ledger, v.address)
    return vals


@pytest.fixture
def client(coordinator):
    return TestClient(create_app(coordinator))


def _create(client) -> str:
    r = client.post("/operations", json=CREATE_BODY)
    assert r.status_code == 200, r.text
    return r.json()["result"]["operation_id"]


# ══════════════════════════════════════════════════════════════════════
#  SECTION 1: COORDINATOR API
# ══════════════════════════════════════════════════════════════════════

class TestOperationsAPI:

    def test_health(self, client):
        r = client.get("/health")
        assert r.json() == {"ok": True, "result": {"status": "ok", "version": "1.0.0"}}

    def test_create_and_get(self, client):
        op_id = _create(client)
        r = client.get(f"/operations/{op_id}")
        result = r.json()["result"]
        assert result["status"] == "PENDING"
        assert result["fee"] == "1000"
        assert result["source_ledger"] == 1

    def test_missing_field(self, client):
        body = dict(CREATE_BODY)
        del body["amount"]
        r = client.post("/operations", json=body)
        assert r.status_code == 400
        assert r.json()["error"] == "bad_request"

    def test_insufficient_fee(self, client):
        r = client.post("/operations", json={**CREATE_BODY, "paid_value": "1"})
        assert r.status_code == 400
        assert r.json() == {"ok": False, "error": "insufficient_fee", "message": "paid 1, fee is 1000"}

    def test_unknown_operation(self, client):
        r = client.get("/operations/0x" + "00" * 32)
        assert r.status_code == 404
        assert r.json()["error"] == "operation_not_found"

    def test_proofs_reach_consensus(self, client, validators):
        op_id = _create(client)
        for ledger in (ETH, TON):
            r = client.post(f"/operations/{op_id}/proofs", json=validators[ledger].proof_for(op_id).to_dict())
            assert r.status_code == 200, r.text
        assert r.json()["result"]["status"] == "EXECUTED"
        assert client.get(f"/operations/{op_id}/consensus").json()["result"]["consensus"] is True

    def test_duplicate_proof_conflict(self, client, validators):
        op_id = _create(client)
        body = validators[ETH].proof_for(op_id).to_dict()
        client.post(f"/operations/{op_id}/proofs", json=body)
        r = client.post(f"/operations/{op_id}/proofs", json=body)
        assert r.status_code == 409
        assert r.json()["error"] == "duplicate_proof"

    def test_invalid_proof(self, client, validators):
        op_id = _create(client)
        body = validators[ETH].proof_for(op_id).to_dict()
        body["signature"] = ""
        r = client.post(f"/operations/{op_id}/proofs", json=body)
        assert r.status_code == 422
        assert r.json()["error"] == "invalid_signature"

    def test_proof_without_timestamp(self, client, validators):
        op_id = _create(client)
        body = validators[ETH].proof_for(op_id).to_dict()
        del body["timestamp"]
        r = client.post(f"/operations/{op_id}/proofs", json=body)
        assert r.status_code == 400
        assert r.json()["error"] == "bad_request"

        body["timestamp"] = 0
        r = client.post(f"/operations/{op_id}/proofs", json=body)
        assert r.status_code == 400
        assert r.json()["error"] == "stale_root"

    def test_cancel(self, client, coordinator):
        op_id = _create(client)
        r = client.post(f"/operations/{op_id}/cancel", json={"caller": ALICE})
        assert r.json()["result"]["status"] == "CANCELLED"
        assert coordinator.protocol_balance == 200

    def test_cancel_by_stranger(self, client):
        op_id = _create(client)
        r = client.post(f"/operations/{op_id}/cancel", json={"caller": CONTROLLER})
        assert r.status_code == 403

    def test_events_cursor(self, client):
        _create(client)
        _create(client)
        events = client.get("/events", params={"after": 1}).json()["result"]
        assert [e["seq"] for e in events] == [2]
        assert events[0]["type"] == "OperationCreated"


class TestBreakerAPI:

    def test_pause_requires_controller(self, client):
        r = client.post("/circuit-breaker/pause", json={"caller": ALICE})
        assert r.status_code == 403

    def test_pause_blocks_creation(self, client):
        r = client.post("/circuit-breaker/pause", json={"caller": CONTROLLER, "reason": "drill"})
        assert r.json()["result"]["paused"] is True
        assert client.get("/health").json()["result"]["status"] == "paused"

        r = client.post("/operations", json=CREATE_BODY)
        assert r.status_code == 423
        assert r.json()["error"] == "circuit_breaker_active"

        client.post("/circuit-breaker/resume", json={"caller": CONTROLLER})
        assert client.get("/circuit-breaker").json()["result"]["paused"] is False
        _create(client)

    def test_stats(self, client):
        _create(client)
        stats = client.get("/stats").json()["result"]
        assert stats["operations_created"] == 1
        assert stats["fees_held"] == "1000"


class TestFeesAPI:

    def test_close_and_claim(self, client, validators):
        op_id = _create(client)
        for ledger in (ETH, SOL):
            client.post(f"/operations/{op_id}/proofs", json=validators[ledger].proof_for(op_id).to_dict())
        epoch = client.post("/epochs/close").json()["result"]
        assert epoch["fee_pool"] == "1000"

        r = client.post("/epochs/1/claim", json={"ledger_id": "solana", "address": validators[SOL].address})
        assert r.json()["result"]["reward"] == "400"

    def test_withdraw_nothing(self, client):
        r = client.post("/withdraw", json={"address": ALICE})
        assert r.status_code == 400
        assert r.json()["error"] == "invalid_operation_state"


class TestStatusMapping:

    @pytest.mark.parametrize("exc,status", [
        (OperationNotFoundError("x"), 404),
        (DuplicateProofError("x"), 409),
        (CircuitBreakerActiveError("x"), 423),
        (InvalidProofError("x"), 422),
        (TransientRelayError("x"), 503),
    ])
    def test_status_for(self, exc, status):
        assert status_for(exc) == status


# ══════════════════════════════════════════════════════════════════════
#  SECTION 2: VALIDATOR ENDPOINT / HTTP SOURCES
# ══════════════════════════════════════════════════════════════════════

def _asgi_client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


class TestHttpProofSource:

    @pytest.mark.asyncio
    async def test_fetches_stub_proof(self, coordinator):
        op = coordinator.create_operation(ALICE, ETH, SOL, 100, 1000)
        stub = StubLedgerValidator(TON, KEYS[TON], clock=_clock)
        source = HttpProofSource(TON, "http://testserver", client=_asgi_client(create_validator_app(stub)))
        proof = await source.fetch_proof(op)
        assert proof.ledger_id == TON
        assert proof.merkle_root == stub.root

    @pytest.mark.asyncio
    async def test_uncommitted_is_transient(self, coordinator):
        op = coordinator.create_operation(ALICE, ETH, SOL, 100, 1000)
        stub = StubLedgerValidator(TON, KEYS[TON], auto_commit=False, clock=_clock)
        source = HttpProofSource(TON, "http://testserver", client=_asgi_client(create_validator_app(stub)))
        with pytest.raises(TransientRelayError):
            await source.fetch_proof(op)

    @pytest.mark.asyncio
    async def test_wrong_ledger_answer(self, coordinator):
        op = coordinator.create_operation(ALICE, ETH, SOL, 100, 1000)
        stub = StubLedgerValidator(SOL, KEYS[SOL], clock=_clock)
        source = HttpProofSource(TON, "http://testserver", client=_asgi_client(create_validator_app(stub)))
        with pytest.raises(InvalidProofError):
            await source.fetch_proof(op)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json=["not", "an", "object"]),
        httpx.Response(200, json={"ok": True}),
        httpx.Response(200, json={"ok": True, "result": {"ledger_id": 3}}),
        httpx.Response(200, json={"ok": True, "result": {"operation_id": "0x00", "ledger_id": "bitcoin", "merkle_root": "0x00"}}),
    ])
    async def test_malformed_answer_is_invalid(self, coordinator, response):
        op = coordinator.create_operation(ALICE, ETH, SOL, 100, 1000)
        source = HttpProofSource(
            TON, "http://testserver", client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: response)),
        )
        with pytest.raises(InvalidProofError):
            await source.fetch_proof(op)

    @pytest.mark.asyncio
    async def test_connection_error_is_transient(self, coordinator):
        op = coordinator.create_operation(ALICE, ETH, SOL, 100, 1000)

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        source = HttpProofSource(TON, "http://nowhere", client=httpx.AsyncClient(transport=httpx.MockTransport(refuse)))
        with pytest.raises(TransientRelayError):
            await source.fetch_proof(op)


class TestHttpRelay:

    @pytest.mark.asyncio
    async def test_coordinator_errors_keep_their_type(self, coordinator, validators):
        op = coordinator.create_operation(ALICE, ETH, SOL, 100, 1000)
        client = HttpCoordinatorClient("http://testserver", client=_asgi_client(create_app(coordinator)))
        proof = validators[TON].proof_for(op.operation_id)

        result = await client.submit_proof(proof, "relayer", ETH, 0, 100_000, 1)
        assert result.valid_proof_count == 1
        with pytest.raises(DuplicateProofError):
            await client.submit_proof(proof, "relayer", ETH, 1, 100_000, 1)
        with pytest.raises(OperationNotFoundError):
            await client.get_operation("0x" + "00" * 32)

    @pytest.mark.asyncio
    async def test_relayer_over_http(self, coordinator, validators):
        op = coordinator.create_operation(ALICE, SOL, TON, 100, 1000)
        client = HttpCoordinatorClient("http://testserver", client=_asgi_client(create_app(coordinator)))
        sources = {
            ledger: HttpProofSource(ledger, "http://testserver", client=_asgi_client(create_validator_app(v)))
            for ledger, v in validators.items()
        }
        relayer = Relayer(client, sources, RelayerConfig(nonce_file=""), nonces=NonceTable(), submitter="relayer")

        assert await relayer.poll_once(SOL) == 1
        await relayer.process_operation(op.operation_id)
        assert coordinator.get_operation(op.operation_id).status == OperationStatus.EXECUTED
        assert relayer.stats["proofs_submitted"] == 2
