"""
Trinity Anomaly Detector / Circuit Breaker

Watches coordinator traffic and pauses it when the traffic looks like an
attack. Checks run in three tiers so the hot path stays cheap:

    Tier 1  every mutating call   breaker state, ledger binding, signer,
                                  same-window operation throttle
    Tier 2  every N calls         volume spike, proof failure rate
    Tier 3  every M calls         prune windows, run maintenance hooks

An automatic trip pauses all mutating calls until its cooldown elapses,
after which the next Tier-1 check clears it. Trips that follow a recovery
closely get exponentially longer cooldowns. Two of the three ledgers can
approve an early resume. Pauses set by the emergency controller never clear
on their own.
"""

import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from ..config.loader import CircuitBreakerConfig
from ..constants import RESUME_APPROVALS_REQUIRED
from ..exceptions import (
    CircuitBreakerActiveError,
    InvalidOperationStateError,
    InvalidSignatureError,
    LedgerBindingError,
    RateLimitedError,
    UnauthorizedError,
)
from ..logger import get_logger
from .types import CircuitBreakerState, LedgerId

logger = get_logger(__name__)

BreakerListener = Callable[[str, CircuitBreakerState], None]


# ══════════════════════════════════════════════════════════════════════
#  STATE PERSISTENCE INTERFACE
# ══════════════════════════════════════════════════════════════════════

@runtime_checkable
class CircuitBreakerStateStore(Protocol):
    """
    Persistence backend for the breaker record, so a pause survives a
    coordinator restart.
    """

    def save_breaker_state(self, state: Dict[str, Any]) -> bool:
        ...

    def load_breaker_state(self) -> Optional[Dict[str, Any]]:
        ...


class InMemoryCircuitBreakerStateStore:
    """In-memory store for tests and single-process deployments."""

    def __init__(self):
        self._state: Optional[Dict[str, Any]] = None

    def save_breaker_state(self, state: Dict[str, Any]) -> bool:
        self._state = dict(state)
        return True

    def load_breaker_state(self) -> Optional[Dict[str, Any]]:
        return dict(self._state) if self._state else None


# ══════════════════════════════════════════════════════════════════════
#  ANOMALY DETECTOR
# ══════════════════════════════════════════════════════════════════════

class AnomalyDetector:
    """
    Owns the circuit breaker record and the windowed traffic counters.

    Args:
        config: Thresholds and intervals (see CircuitBreakerConfig)
        state: Breaker record to mutate. Created inactive when omitted.
        emergency_controller: Address allowed to pause and resume by hand.
                              Fixed for the lifetime of the detector.
        state_store: Persistence backend. Defaults to in-memory.
        clock: Returns the current unix time; injectable for tests.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig,
        state: Optional[CircuitBreakerState] = None,
        emergency_controller: Optional[str] = None,
        state_store: Optional[CircuitBreakerStateStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._emergency_controller = (emergency_controller or config.emergency_controller or "").lower()
        self._clock = clock
        self._state_store: CircuitBreakerStateStore = state_store or InMemoryCircuitBreakerStateStore()
        self.state = state if state is not None else CircuitBreakerState()

        # ── windowed counters ──
        self._operation_times: Deque[int] = deque()
        self._volume: Deque[Tuple[int, int]] = deque()
        self._proof_results: Deque[Tuple[int, bool]] = deque()
        self._call_count = 0

        self._listeners: List[BreakerListener] = []
        self._maintenance: List[Callable[[int], Any]] = []

        self._load_state()

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "_emergency_controller" and "_emergency_controller" in self.__dict__:
            raise AttributeError("emergency controller is fixed at construction")
        super().__setattr__(name, value)

    # ── Properties ──────────────────────────────────────────────────

    @property
    def emergency_controller(self) -> str:
        return self._emergency_controller

    @property
    def is_paused(self) -> bool:
        return self.state.paused

    @property
    def call_count(self) -> int:
        return self._call_count

    def now(self) -> int:
        return int(self._clock())

    def add_listener(self, listener: BreakerListener) -> None:
        """Called with ("tripped" | "recovered", state) on every transition."""
        self._listeners.append(listener)

    def add_maintenance_hook(self, hook: Callable[[int], Any]) -> None:
        """Called with the current time on every Tier-3 pass."""
        self._maintenance.append(hook)

    # ── Tier 1 ──────────────────────────────────────────────────────

    def check(self) -> None:
        """
        Breaker check run at the top of every mutating call.

        Clears an automatic trip whose cooldown has elapsed first.

        Raises:
            CircuitBreakerActiveError: while paused
        """
        now = self.now()
        state = self.state
        if state.active and not state.emergency_pause:
            if state.cooldown_until is not None and now >= state.cooldown_until:
                self._recover(now, "cooldown elapsed")

        if state.paused:
            raise CircuitBreakerActiveError(
                f"circuit breaker active: {state.reason or 'paused'}"
            )

    @staticmethod
    def check_ledger(ledger_id) -> LedgerId:
        """Resolve a ledger id, rejecting anything outside the three ledgers."""
        try:
            return LedgerId.parse(ledger_id)
        except (KeyError, ValueError, TypeError) as e:
            raise LedgerBindingError(f"unknown ledger id {ledger_id!r}") from e

    @staticmethod
    def check_signer(ledger: LedgerId, signer: str, authorized: Iterable[str]) -> None:
        """
        Reject a signer that is not a registered validator of *ledger*.

        Raises:
            InvalidSignatureError: signer not registered for the ledger
        """
        allowed = {a.lower() for a in authorized}
        if signer.lower() not in allowed:
            raise InvalidSignatureError(
                f"signer {signer} is not a registered {ledger.name} validator"
            )

    def check_operation_rate(self) -> None:
        """
        Same-window throttle on operation creation. Rejects without tripping.

        Raises:
            RateLimitedError: window already holds the maximum
        """
        now = self.now()
        window_start = now - self.config.operation_window_seconds
        while self._operation_times and self._operation_times[0] <= window_start:
            self._operation_times.popleft()
        if len(self._operation_times) >= self.config.max_operations_per_window:
            raise RateLimitedError(
                f"{len(self._operation_times)} operations in the last "
                f"{self.config.operation_window_seconds}s"
            )

    # ── Recording ───────────────────────────────────────────────────

    def record_operation(self, amount: int) -> None:
        now = self.now()
        self._operation_times.append(now)
        self._volume.append((now, amount))

    def record_proof(self, valid: bool) -> None:
        self._proof_results.append((self.now(), valid))

    def tick(self) -> None:
        """Count one mutating call and run Tier 2 / Tier 3 when due."""
        self._call_count += 1
        if self._call_count % self.config.tier2_interval == 0:
            self.run_tier2()
        if self._call_count % self.config.tier3_interval == 0:
            self.run_tier3()

    # ── Tier 2 ──────────────────────────────────────────────────────

    def failure_rate(self) -> Tuple[int, int]:
        """(failed, total) proof submissions inside the failure window."""
        since = self.now() - self.config.failure_window_seconds
        recent = [ok for ts, ok in self._proof_results if ts > since]
        return sum(1 for ok in recent if not ok), len(recent)

    def volume_ratio_pct(self) -> Optional[int]:
        """
        Current window volume as a percentage of the trailing per-window
        mean. None when there is no baseline yet.
        """
        now = self.now()
        window = self.config.volume_window_seconds
        current_start = now - window
        baseline_start = current_start - window * self.config.baseline_windows

        current = 0
        baseline = 0
        for ts, amount in self._volume:
            if ts > current_start:
                current += amount
            elif ts > baseline_start:
                baseline += amount

        if baseline == 0:
            return None
        # current / (baseline / windows) as a percentage, integer only
        return current * 100 * self.config.baseline_windows // baseline

    def run_tier2(self) -> bool:
        """Run the statistical checks. Returns True if the breaker tripped."""
        if self.state.paused:
            return False

        failed, total = self.failure_rate()
        if total >= self.config.min_proof_samples:
            if failed * 100 > self.config.max_failure_rate_pct * total:
                return self.trip(
                    f"proof failure rate {failed * 100 // total}% exceeds "
                    f"{self.config.max_failure_rate_pct}%"
                )

        ratio = self.volume_ratio_pct()
        if ratio is not None and ratio > self.config.volume_spike_pct:
            return self.trip(
                f"volume spike {ratio}% of baseline exceeds {self.config.volume_spike_pct}%"
            )
        return False

    # ── Tier 3 ──────────────────────────────────────────────────────

    def run_tier3(self) -> None:
        now = self.now()
        horizon = max(
            self.config.failure_window_seconds,
            self.config.volume_window_seconds * (self.config.baseline_windows + 1),
            self.config.operation_window_seconds,
        )
        cutoff = now - horizon
        for window in (self._volume, self._proof_results):
            while window and window[0][0] <= cutoff:
                window.popleft()
        while self._operation_times and self._operation_times[0] <= cutoff:
            self._operation_times.popleft()

        for hook in self._maintenance:
            try:
                hook(now)
            except Exception as exc:
                logger.error(f"Maintenance hook failed: {exc}", exc_info=True)

    # ── Transitions ─────────────────────────────────────────────────

    def trip(self, reason: str) -> bool:
        """
        Automatic trip. Returns False if the breaker was already paused.

        A trip within one base cooldown of the last recovery escalates the
        cooldown: base * 2**attempts, capped at max_cooldown_seconds.
        """
        state = self.state
        if state.paused:
            return False

        now = self.now()
        if (
            state.last_recovered_at is not None
            and now - state.last_recovered_at < self.config.base_cooldown_seconds
        ):
            state.recovery_attempts += 1
        else:
            state.recovery_attempts = 0

        cooldown = min(
            self.config.base_cooldown_seconds * 2 ** state.recovery_attempts,
            self.config.max_cooldown_seconds,
        )
        state.active = True
        state.triggered_at = now
        state.reason = reason
        state.cooldown_until = now + cooldown
        state.resume_approvals = set()

        self._persist_state()
        logger.critical(
            f"CIRCUIT BREAKER TRIPPED: {reason} "
            f"(attempt {state.recovery_attempts}, cooldown {cooldown}s)"
        )
        self._notify("tripped")
        return True

    def halt(self, reason: str) -> None:
        """Emergency-grade pause for fatal internal errors. Only the controller can lift it."""
        state = self.state
        state.emergency_pause = True
        state.triggered_at = self.now()
        state.reason = reason
        self._persist_state()
        logger.critical(f"CIRCUIT BREAKER HALT: {reason}")
        self._notify("tripped")

    def emergency_pause(self, caller: str, reason: str = "emergency pause") -> None:
        self._require_controller(caller)
        if self.state.emergency_pause:
            return
        state = self.state
        state.emergency_pause = True
        state.triggered_at = self.now()
        state.reason = reason
        self._persist_state()
        logger.critical(f"CIRCUIT BREAKER EMERGENCY PAUSE by {caller}: {reason}")
        self._notify("tripped")

    def emergency_resume(self, caller: str) -> None:
        """Lift any pause, automatic or emergency."""
        self._require_controller(caller)
        if not self.state.paused:
            raise InvalidOperationStateError("circuit breaker is not paused")
        self.state.emergency_pause = False
        self._recover(self.now(), f"emergency resume by {caller}")

    def approve_resume(self, ledger_id) -> bool:
        """
        Record one ledger's approval to lift an automatic trip early.
        Returns True once enough ledgers have approved and the breaker cleared.
        """
        ledger = self.check_ledger(ledger_id)
        state = self.state
        if state.emergency_pause:
            raise UnauthorizedError("emergency pause can only be lifted by the emergency controller")
        if not state.active:
            raise InvalidOperationStateError("circuit breaker is not active")

        state.resume_approvals.add(ledger)
        self._persist_state()
        logger.info(
            f"Resume approved by {ledger.name} "
            f"({len(state.resume_approvals)}/{RESUME_APPROVALS_REQUIRED})"
        )
        if len(state.resume_approvals) >= RESUME_APPROVALS_REQUIRED:
            self._recover(self.now(), "approved by ledgers")
            return True
        return False

    def _recover(self, now: int, why: str) -> None:
        state = self.state
        state.active = False
        state.cooldown_until = None
        state.triggered_at = None
        state.last_recovered_at = now
        state.resume_approvals = set()
        previous = state.reason
        state.reason = ""
        # The failures that caused the trip must not re-trip it immediately
        self._proof_results.clear()

        self._persist_state()
        logger.warning(f"Circuit breaker recovered ({why}); was: {previous}")
        self._notify("recovered")

    def _require_controller(self, caller: str) -> None:
        if not self._emergency_controller or (caller or "").lower() != self._emergency_controller:
            raise UnauthorizedError("caller is not the emergency controller")

    def _notify(self, kind: str) -> None:
        for listener in self._listeners:
            try:
                listener(kind, self.state)
            except Exception as exc:
                logger.error(f"Circuit breaker listener failed: {exc}", exc_info=True)

    # ── Persistence ─────────────────────────────────────────────────

    def _persist_state(self) -> None:
        try:
            if not self._state_store.save_breaker_state(self.state.to_dict()):
                logger.error("Failed to persist circuit breaker state")
        except Exception as exc:
            logger.error(f"State store error: {exc}", exc_info=True)

    def _load_state(self) -> None:
        try:
            saved = self._state_store.load_breaker_state()
        except Exception as exc:
            logger.error(f"Failed to load circuit breaker state: {exc}", exc_info=True)
            return

        if saved is None:
            return

        restored = CircuitBreakerState.from_dict(saved)
        # Mutate in place: the coordinator holds a reference to this record
        for name, value in vars(restored).items():
            setattr(self.state, name, value)

        if self.state.paused:
            logger.warning(f"Circuit breaker state RESTORED as paused: {self.state.reason}")

    # ── Status ──────────────────────────────────────────────────────

    def get_status(self) -> Dict[str, Any]:
        failed, total = self.failure_rate()
        return {
            **self.state.to_dict(),
            "paused": self.state.paused,
            "emergency_controller": self._emergency_controller,
            "calls": self._call_count,
            "proof_failures": failed,
            "proof_samples": total,
            "volume_ratio_pct": self.volume_ratio_pct(),
            "operations_in_window": len(self._operation_times),
        }
