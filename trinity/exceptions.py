"""
Trinity Exceptions

Custom exception classes for the consensus coordinator, fee engine and relayer.

Every exception carries a stable ``code`` that the HTTP API returns to
clients, so relayers can tell "already submitted" apart from "try again".
"""


class TrinityException(Exception):
    """Base exception for Trinity."""
    code = "trinity_error"


# ── Policy rejections ─────────────────────────────────────────────────
# The request was well-formed but the coordinator refuses it. Nothing changed.

class PolicyRejection(TrinityException):
    """Request rejected by coordinator policy."""
    code = "rejected"


class InsufficientFeeError(PolicyRejection):
    """Paid value is below the computed fee."""
    code = "insufficient_fee"


class AmountOutOfBoundsError(PolicyRejection):
    """Operation amount is outside the configured bounds."""
    code = "amount_out_of_bounds"


class DurationOutOfBoundsError(PolicyRejection):
    """Requested operation lifetime is outside the configured bounds."""
    code = "duration_out_of_bounds"


class CircuitBreakerActiveError(PolicyRejection):
    """The circuit breaker is tripped; mutating calls are refused."""
    code = "circuit_breaker_active"


class RateLimitedError(PolicyRejection):
    """Too many operations in the current window."""
    code = "rate_limited"


class DuplicateProofError(PolicyRejection):
    """A proof from this ledger was already accepted for the operation."""
    code = "duplicate_proof"


class StaleRootError(PolicyRejection):
    """Merkle root is too old, or claims a time in the future."""
    code = "stale_root"


class OperationExpiredError(PolicyRejection):
    """Operation deadline has passed."""
    code = "operation_expired"


class OperationNotFoundError(PolicyRejection):
    """No operation with this id."""
    code = "operation_not_found"


class InvalidOperationStateError(PolicyRejection):
    """The operation's status does not allow this call."""
    code = "invalid_operation_state"


class LedgerBindingError(PolicyRejection):
    """Ledger id is unknown, or does not match the caller's binding."""
    code = "ledger_binding"


class UnauthorizedError(PolicyRejection):
    """Caller is not allowed to perform this call."""
    code = "unauthorized"


class ProofPathTooLongError(PolicyRejection):
    """Sibling path exceeds the configured maximum depth."""
    code = "proof_path_too_long"


# ── Invalid proofs ────────────────────────────────────────────────────

class InvalidProofError(TrinityException):
    """Merkle proof does not verify against the claimed root."""
    code = "invalid_proof"


class InvalidSignatureError(InvalidProofError):
    """Proof signature is malformed or from an unregistered validator."""
    code = "invalid_signature"


# ── Transient I/O ─────────────────────────────────────────────────────

class TransientRelayError(TrinityException):
    """Timeout or connection failure talking to a ledger or the coordinator."""
    code = "transient"


class NonceError(TransientRelayError):
    """Submitted nonce does not match the ledger's next expected nonce."""
    code = "nonce_mismatch"


# ── Accounting ────────────────────────────────────────────────────────

class FatalError(TrinityException):
    """The coordinator must halt."""
    code = "fatal"


class AccountingInvariantError(FatalError):
    """Fee distribution does not add up."""
    code = "accounting_invariant"


class FeeError(TrinityException):
    """Fee computation called with invalid arguments."""
    code = "fee_error"


class ConfigurationError(TrinityException):
    """Configuration error."""
    code = "configuration_error"


def exception_for_code(code: str) -> type:
    """Map an error code returned by the API back to its exception class."""
    pending = [TrinityException]
    while pending:
        cls = pending.pop()
        if cls.code == code:
            return cls
        pending.extend(cls.__subclasses__())
    return TrinityException
