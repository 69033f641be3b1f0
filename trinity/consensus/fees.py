"""
Trinity Fee Engine

Prices operations and splits fees between proof submitters and the protocol.

Everything is integer arithmetic on basis points and percentages with floor
division. Nothing may be created or lost: every split is checked, and a
split that does not add up raises ``AccountingInvariantError``, which the
coordinator treats as fatal.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

from ..config.loader import FeeConfig
from ..constants import (
    BPS_DENOMINATOR,
    CANCELLATION_REFUND_PCT,
    MAX_SECURITY_MULTIPLIER_BPS,
    MAX_SPLIT_DUST,
    MIN_SECURITY_MULTIPLIER_BPS,
    PROTOCOL_SHARE_PCT,
    SPEED_MULTIPLIER_BPS,
    VALIDATOR_SHARE_PCT,
)
from ..exceptions import AccountingInvariantError, FeeError


@dataclass(frozen=True)
class FeeSplit:
    """Result of splitting a fee. ``dust`` is the rounding shortfall, always < 3."""
    validator_share: int
    protocol_share: int
    dust: int

    @property
    def total(self) -> int:
        return self.validator_share + self.protocol_share + self.dust


def _check_amount(name: str, value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool):
        raise FeeError(f"{name} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise FeeError(f"{name} must be >= 0, got {value}")


def split_fee(fee: int) -> FeeSplit:
    """
    80% to validators, 20% to the protocol, floor division on each.

    Raises:
        AccountingInvariantError: if the shares exceed the fee or the dust is 3 or more
    """
    _check_amount("fee", fee)
    validator_share = fee * VALIDATOR_SHARE_PCT // 100
    protocol_share = fee * PROTOCOL_SHARE_PCT // 100
    dust = fee - validator_share - protocol_share

    if validator_share + protocol_share > fee:
        raise AccountingInvariantError(
            f"fee split overflows: {validator_share} + {protocol_share} > {fee}"
        )
    if dust >= MAX_SPLIT_DUST:
        raise AccountingInvariantError(f"fee split dust {dust} for fee {fee} exceeds bound")

    return FeeSplit(validator_share, protocol_share, dust)


def per_validator_reward(validator_share: int, validator_count: int) -> Tuple[int, int]:
    """Equal share per validator, plus the undistributable remainder."""
    _check_amount("validator_share", validator_share)
    if validator_count < 1:
        raise FeeError("validator_count must be >= 1")
    reward = validator_share // validator_count
    return reward, validator_share - reward * validator_count


def cancellation_refund(fee: int) -> Tuple[int, int]:
    """
    80% back to the initiator, the rest kept as a penalty.

    The refund rounds down, so a fee of 1 refunds 0 and keeps 1.
    """
    _check_amount("fee", fee)
    refund = fee * CANCELLATION_REFUND_PCT // 100
    penalty = fee - refund
    if refund + penalty != fee or refund > fee:
        raise AccountingInvariantError(f"cancellation split {refund} + {penalty} != {fee}")
    return refund, penalty


def epoch_validator_reward(epoch_pool: int, my_proofs: int, total_proofs: int) -> int:
    """Validator share of the epoch pool, pro rata by accepted proofs. Zero when nobody submitted."""
    _check_amount("epoch_pool", epoch_pool)
    if total_proofs == 0:
        return 0
    if my_proofs < 0 or my_proofs > total_proofs:
        raise FeeError(f"proof count {my_proofs} outside [0, {total_proofs}]")
    return split_fee(epoch_pool).validator_share * my_proofs // total_proofs


class FeeEngine:
    """Prices operations from the configured base fee and multipliers."""

    def __init__(self, config: FeeConfig):
        if not MIN_SECURITY_MULTIPLIER_BPS <= config.security_multiplier_bps <= MAX_SECURITY_MULTIPLIER_BPS:
            raise FeeError(f"security multiplier {config.security_multiplier_bps} bps out of range")
        self.config = config

    def price_operation(
        self,
        prioritize_speed: bool = False,
        prioritize_security: bool = False,
        base_fee: Optional[int] = None,
    ) -> int:
        """
        base_fee x 1.5 for speed x the security multiplier, floored at each
        step and capped at ``max_fee``.
        """
        fee = self.config.base_fee if base_fee is None else base_fee
        _check_amount("base_fee", fee)
        if prioritize_speed:
            fee = fee * SPEED_MULTIPLIER_BPS // BPS_DENOMINATOR
        if prioritize_security:
            fee = fee * self.config.security_multiplier_bps // BPS_DENOMINATOR
        return min(fee, self.config.max_fee)

    split_fee = staticmethod(split_fee)
    per_validator_reward = staticmethod(per_validator_reward)
    cancellation_refund = staticmethod(cancellation_refund)
    epoch_validator_reward = staticmethod(epoch_validator_reward)
