"""
Trinity Coordinator HTTP API

FastAPI front end for a ConsensusCoordinator. Every response has the shape
``{"ok": true, "result": ...}`` or ``{"ok": false, "error": <code>,
"message": <text>}``; the error code is the exception's ``code`` so clients
can rebuild the exception.

All handlers are ``async def``: they run on the event loop thread, one at a
time, which keeps the coordinator a serial state machine.
"""

from typing import Any, Dict

from fastapi import Body, FastAPI, Query, Request
from starlette.responses import JSONResponse

from .. import __version__
from ..consensus.coordinator import ConsensusCoordinator
from ..relayer.sources import StubLedgerValidator
from ..exceptions import (
    CircuitBreakerActiveError,
    DuplicateProofError,
    FatalError,
    InvalidProofError,
    OperationNotFoundError,
    RateLimitedError,
    TransientRelayError,
    TrinityException,
    UnauthorizedError,
)
from ..logger import get_logger

logger = get_logger(__name__)

# Most specific first
ERROR_STATUS = [
    (OperationNotFoundError, 404),
    (UnauthorizedError, 403),
    (DuplicateProofError, 409),
    (CircuitBreakerActiveError, 423),
    (RateLimitedError, 429),
    (InvalidProofError, 422),
    (TransientRelayError, 503),
    (FatalError, 500),
    (TrinityException, 400),
]


class BadRequest(TrinityException):
    code = "bad_request"


def status_for(exc: TrinityException) -> int:
    for cls, status in ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 400


def ok(result: Any) -> Dict[str, Any]:
    return {"ok": True, "result": result}


def _require(body: dict, key: str) -> Any:
    if key not in body:
        raise BadRequest(f"'{key}' not found in body.")
    return body[key]


def _as_int(value: Any, name: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        raise BadRequest(f"'{name}' must be an integer") from e


def create_app(coordinator: ConsensusCoordinator, title: str = "Trinity Coordinator") -> FastAPI:
    app = FastAPI(title=title, description="2-of-3 cross-ledger consensus coordinator.", version=__version__)
    app.state.coordinator = coordinator

    @app.exception_handler(TrinityException)
    async def trinity_exception_handler(request: Request, exc: TrinityException):
        status = status_for(exc)
        if status >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        else:
            logger.debug(f"{request.method} {request.url.path} rejected: {exc.code}: {exc}")
        return JSONResponse(
            status_code=status,
            content={"ok": False, "error": exc.code, "message": str(exc)},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.error(f"Unhandled exception on {request.url.path}: {exc}", exc_info=True)
        return JSONResponse(status_code=500, content={"ok": False, "error": "internal_error", "message": "Internal Server Error"})

    # ── Health / status ─────────────────────────────────────────────

    @app.get("/health")
    async def health():
        return ok({"status": "paused" if coordinator.detector.is_paused else "ok", "version": __version__})

    @app.get("/stats")
    async def stats():
        return ok(coordinator.get_stats())

    @app.get("/events")
    async def events(after: int = Query(0, ge=0), limit: int = Query(100, ge=1, le=1000)):
        return ok([e.to_dict() for e in coordinator.get_events(after=after, limit=limit)])

    # ── Operations ──────────────────────────────────────────────────

    @app.post("/operations")
    async def create_operation(body: dict = Body(...)):
        duration = body.get("duration")
        op = coordinator.create_operation(
            initiator=str(_require(body, "initiator")),
            source_ledger=_require(body, "source_ledger"),
            destination_ledger=_require(body, "destination_ledger"),
            amount=_as_int(_require(body, "amount"), "amount"),
            paid_value=_as_int(_require(body, "paid_value"), "paid_value"),
            prioritize_speed=bool(body.get("prioritize_speed", False)),
            prioritize_security=bool(body.get("prioritize_security", False)),
            target_contract=str(body.get("target_contract", "")),
            duration=_as_int(duration, "duration") if duration is not None else None,
        )
        return ok(op.to_dict())

    @app.get("/operations/{operation_id}")
    async def get_operation(operation_id: str):
        return ok(coordinator.get_operation(operation_id).to_dict())

    @app.get("/operations/{operation_id}/consensus")
    async def has_consensus(operation_id: str):
        return ok({"operation_id": operation_id, "consensus": coordinator.has_consensus(operation_id)})

    @app.post("/operations/{operation_id}/proofs")
    async def submit_proof(operation_id: str, body: dict = Body(...)):
        path = body.get("sibling_path", [])
        if not isinstance(path, list):
            raise BadRequest("'sibling_path' must be a list")
        op = coordinator.submit_proof(
            operation_id,
            _require(body, "ledger_id"),
            str(_require(body, "merkle_root")),
            [str(s) for s in path],
            block_reference=str(body.get("block_reference", "")),
            timestamp=_as_int(_require(body, "timestamp"), "timestamp"),
            signature=str(body.get("signature", "")),
            submitter=str(body.get("submitter", "")),
            leaf=body.get("leaf"),
        )
        return ok(op.to_dict())

    @app.post("/operations/{operation_id}/cancel")
    async def cancel_operation(operation_id: str, body: dict = Body(...)):
        op = coordinator.cancel_operation(operation_id, str(_require(body, "caller")))
        return ok(op.to_dict())

    @app.post("/operations/{operation_id}/reclaim")
    async def reclaim_expired(operation_id: str, body: dict = Body(...)):
        amount = coordinator.reclaim_expired(operation_id, str(_require(body, "caller")))
        return ok({"operation_id": operation_id, "amount": str(amount)})

    # ── Circuit breaker ─────────────────────────────────────────────

    @app.get("/circuit-breaker")
    async def circuit_breaker():
        return ok(coordinator.get_circuit_breaker_state())

    @app.post("/circuit-breaker/pause")
    async def pause(body: dict = Body(...)):
        coordinator.emergency_pause(str(_require(body, "caller")), str(body.get("reason", "emergency pause")))
        return ok(coordinator.get_circuit_breaker_state())

    @app.post("/circuit-breaker/resume")
    async def resume(body: dict = Body(...)):
        coordinator.emergency_resume(str(_require(body, "caller")))
        return ok(coordinator.get_circuit_breaker_state())

    @app.post("/circuit-breaker/approve-resume")
    async def approve_resume(body: dict = Body(...)):
        resumed = coordinator.approve_resume(_require(body, "ledger_id"), str(_require(body, "caller")))
        return ok({"resumed": resumed, **coordinator.get_circuit_breaker_state()})

    # ── Fees ────────────────────────────────────────────────────────

    @app.get("/epochs/{epoch_id}")
    async def get_epoch(epoch_id: int):
        return ok(coordinator.get_epoch(epoch_id).to_dict())

    @app.post("/epochs/close")
    async def close_epoch():
        return ok(coordinator.close_epoch().to_dict())

    @app.post("/epochs/{epoch_id}/claim")
    async def claim_epoch_reward(epoch_id: int, body: dict = Body(...)):
        reward = coordinator.claim_epoch_reward(
            epoch_id, _require(body, "ledger_id"), str(_require(body, "address"))
        )
        return ok({"epoch_id": epoch_id, "reward": str(reward)})

    @app.post("/withdraw")
    async def withdraw(body: dict = Body(...)):
        amount = coordinator.withdraw(str(_require(body, "address")))
        return ok({"amount": str(amount)})

    return app


def create_validator_app(validator: StubLedgerValidator) -> FastAPI:
    """Serve a stub validator's proofs in the shape HttpProofSource expects."""
    app = FastAPI(title=f"Trinity {validator.ledger.name} validator (stub)", version=__version__)

    @app.get("/health")
    async def health():
        return ok({"ledger": validator.ledger.name, "address": validator.address, "online": validator.online})

    @app.post("/commit/{operation_id}")
    async def commit(operation_id: str):
        return ok({"operation_id": operation_id.lower(), "root": validator.commit(operation_id)})

    @app.get("/proofs/{operation_id}")
    async def proof(operation_id: str):
        if not validator.online:
            return JSONResponse(status_code=503, content={"ok": False, "error": "transient", "message": "offline"})
        try:
            result = validator.proof_for(operation_id)
        except TransientRelayError as e:
            return JSONResponse(status_code=404, content={"ok": False, "error": e.code, "message": str(e)})
        return ok(result.to_dict())

    return app
