"""
Trinity TOML Configuration Loader

Loads every section of config.toml with environment variable overrides.
Each section is a dataclass with ``from_dict``; the selected network profile
supplies the defaults that the file then overrides.

Environment variable mapping:
    [network] name             -> TRINITY_NETWORK
    [rpc] port                 -> TRINITY_RPC_PORT
    [relayer] coordinator_url  -> TRINITY_COORDINATOR_URL
    [circuit_breaker] emergency_controller -> TRINITY_EMERGENCY_CONTROLLER
    ...

Keys (validator and relayer signing keys) MUST come from env vars, never TOML.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import tomllib as tomli  # Python 3.11+
except ImportError:
    import tomli  # type: ignore[no-redef]

from ..constants import (
    DEFAULT_MAX_PROOF_DEPTH,
    MAX_SECURITY_MULTIPLIER_BPS,
    MIN_SECURITY_MULTIPLIER_BPS,
    TRINITY_COORDINATOR_URL,
    TRINITY_NETWORK,
    TRINITY_NONCE_FILE,
    TRINITY_RPC_HOST,
    TRINITY_RPC_PORT,
)
from ..exceptions import ConfigurationError

logger = logging.getLogger(__name__)

HOUR = 3600
DAY = 24 * HOUR


def _section_kwargs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
    """Keep only keys that are fields of *cls*; warn about the rest."""
    names = {f.name for f in fields(cls)}
    unknown = set(data) - names
    if unknown:
        logger.warning("Ignoring unknown keys in [%s]: %s", cls.SECTION, ", ".join(sorted(unknown)))
    return {k: copy.deepcopy(v) for k, v in data.items() if k in names}


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------

@dataclass
class FeeConfig:
    """[fees] section. All amounts in the smallest fee unit."""
    SECTION = "fees"

    base_fee: int = 1_000_000_000_000_000  # 0.001 in 18-decimal units
    security_multiplier_bps: int = 15_000
    max_fee: int = 1_000_000_000_000_000_000
    epoch_duration_seconds: int = 7 * DAY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FeeConfig":
        return cls(**_section_kwargs(cls, data))

    def validate(self) -> None:
        if self.base_fee < 0:
            raise ConfigurationError("fees.base_fee must be >= 0")
        if not MIN_SECURITY_MULTIPLIER_BPS <= self.security_multiplier_bps <= MAX_SECURITY_MULTIPLIER_BPS:
            raise ConfigurationError(
                f"fees.security_multiplier_bps must be within "
                f"[{MIN_SECURITY_MULTIPLIER_BPS}, {MAX_SECURITY_MULTIPLIER_BPS}]"
            )
        if self.max_fee < self.base_fee:
            raise ConfigurationError("fees.max_fee must be >= fees.base_fee")
        if self.epoch_duration_seconds <= 0:
            raise ConfigurationError("fees.epoch_duration_seconds must be > 0")


@dataclass
class CircuitBreakerConfig:
    """[circuit_breaker] section."""
    SECTION = "circuit_breaker"

    max_failure_rate_pct: int = 20
    volume_spike_pct: int = 500
    failure_window_seconds: int = HOUR
    volume_window_seconds: int = HOUR
    baseline_windows: int = 24
    min_proof_samples: int = 10
    max_operations_per_window: int = 100
    operation_window_seconds: int = 60
    tier2_interval: int = 10
    tier3_interval: int = 100
    base_cooldown_seconds: int = 4 * HOUR
    max_cooldown_seconds: int = 7 * DAY
    emergency_controller: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CircuitBreakerConfig":
        return cls(**_section_kwargs(cls, data))

    def apply_env(self) -> None:
        if v := os.environ.get("TRINITY_EMERGENCY_CONTROLLER"):
            self.emergency_controller = v

    def validate(self) -> None:
        if not 0 < self.max_failure_rate_pct <= 100:
            raise ConfigurationError("circuit_breaker.max_failure_rate_pct must be in (0, 100]")
        if self.volume_spike_pct <= 100:
            raise ConfigurationError("circuit_breaker.volume_spike_pct must be > 100")
        if self.tier2_interval < 1 or self.tier3_interval < self.tier2_interval:
            raise ConfigurationError("circuit_breaker tier intervals must satisfy 1 <= tier2 <= tier3")
        if self.base_cooldown_seconds <= 0 or self.max_cooldown_seconds < self.base_cooldown_seconds:
            raise ConfigurationError("circuit_breaker cooldowns must satisfy 0 < base <= max")
        if self.max_operations_per_window < 1:
            raise ConfigurationError("circuit_breaker.max_operations_per_window must be >= 1")


@dataclass
class MerkleConfig:
    """[merkle] section."""
    SECTION = "merkle"

    max_depth: int = DEFAULT_MAX_PROOF_DEPTH
    root_validity_seconds: int = DAY
    max_future_drift_seconds: int = HOUR

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MerkleConfig":
        return cls(**_section_kwargs(cls, data))

    def validate(self) -> None:
        if self.max_depth < 1:
            raise ConfigurationError("merkle.max_depth must be >= 1")
        if self.root_validity_seconds <= 0:
            raise ConfigurationError("merkle.root_validity_seconds must be > 0")


@dataclass
class OperationConfig:
    """[operations] section."""
    SECTION = "operations"

    min_amount: int = 1
    max_amount: int = 10 ** 27
    default_duration_seconds: int = DAY
    min_duration_seconds: int = HOUR
    max_duration_seconds: int = 30 * DAY

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OperationConfig":
        return cls(**_section_kwargs(cls, data))

    def validate(self) -> None:
        if self.min_amount < 1 or self.max_amount < self.min_amount:
            raise ConfigurationError("operations amount bounds must satisfy 1 <= min <= max")
        if not self.min_duration_seconds <= self.default_duration_seconds <= self.max_duration_seconds:
            raise ConfigurationError("operations.default_duration_seconds must lie within the duration bounds")


@dataclass
class ValidatorsConfig:
    """[validators] section: registered validator addresses per ledger."""
    SECTION = "validators"

    ethereum: List[str] = field(default_factory=list)
    solana: List[str] = field(default_factory=list)
    ton: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidatorsConfig":
        return cls(**_section_kwargs(cls, data))


@dataclass
class RelayerConfig:
    """[relayer] section."""
    SECTION = "relayer"

    coordinator_url: str = str(TRINITY_COORDINATOR_URL)
    # ledger name -> validator proof endpoint
    validator_urls: Dict[str, str] = field(default_factory=dict)
    nonce_file: str = str(TRINITY_NONCE_FILE)
    submitter: str = ""
    poll_interval_seconds: float = 2.0
    fetch_timeout_seconds: float = 10.0
    queue_size: int = 100
    max_retries: int = 3
    retry_base_delay_ms: int = 1000
    retry_max_delay_ms: int = 10_000
    gas_buffer_pct: int = 20
    default_gas_limit: int = 300_000
    gas_price_multiplier: float = 1.2

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelayerConfig":
        return cls(**_section_kwargs(cls, data))

    def apply_env(self) -> None:
        if v := os.environ.get("TRINITY_COORDINATOR_URL"):
            self.coordinator_url = v
        if v := os.environ.get("TRINITY_NONCE_FILE"):
            self.nonce_file = v
        if v := os.environ.get("TRINITY_RELAYER_ADDRESS"):
            self.submitter = v

    def validate(self) -> None:
        if self.max_retries < 1:
            raise ConfigurationError("relayer.max_retries must be >= 1")
        if self.fetch_timeout_seconds <= 0:
            raise ConfigurationError("relayer.fetch_timeout_seconds must be > 0")
        if self.gas_price_multiplier < 1.0:
            raise ConfigurationError("relayer.gas_price_multiplier must be >= 1.0")
        if self.queue_size < 1:
            raise ConfigurationError("relayer.queue_size must be >= 1")


@dataclass
class RPCConfig:
    """[rpc] section."""
    SECTION = "rpc"

    host: str = str(TRINITY_RPC_HOST)
    port: int = int(TRINITY_RPC_PORT)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RPCConfig":
        return cls(**_section_kwargs(cls, data))

    def apply_env(self) -> None:
        if v := os.environ.get("TRINITY_RPC_HOST"):
            self.host = v
        if v := os.environ.get("TRINITY_RPC_PORT"):
            self.port = int(v)


@dataclass
class LogConfig:
    """[log] section."""
    SECTION = "log"

    level: str = "INFO"
    file_output: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogConfig":
        return cls(**_section_kwargs(cls, data))

    def apply_env(self) -> None:
        if v := os.environ.get("TRINITY_LOG_LEVEL"):
            self.level = v.upper()


# ---------------------------------------------------------------------------
# Network profiles
# ---------------------------------------------------------------------------
# Section overrides applied before the TOML file. Mainnet uses the dataclass
# defaults; testnet tolerates noisier validators and recovers faster.

NETWORK_PROFILES: Dict[str, Dict[str, Dict[str, Any]]] = {
    "mainnet": {},
    "testnet": {
        "circuit_breaker": {
            "max_failure_rate_pct": 50,
            "volume_spike_pct": 1000,
            "max_operations_per_window": 1000,
            "base_cooldown_seconds": 2 * HOUR,
        },
        "fees": {
            "base_fee": 1_000_000_000_000,
        },
        "operations": {
            "min_duration_seconds": 60,
        },
    },
}


# -----------------------------------------------------------------------
# Top-level config
# -----------------------------------------------------------------------

@dataclass
class TrinityConfig:
    """
    Unified configuration for the coordinator, relayer and API.

    Built from a network profile, then a parsed TOML dict, then environment
    overrides. This is the single source of truth at runtime.
    """
    network: str = "mainnet"
    fees: FeeConfig = field(default_factory=FeeConfig)
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    merkle: MerkleConfig = field(default_factory=MerkleConfig)
    operations: OperationConfig = field(default_factory=OperationConfig)
    validators: ValidatorsConfig = field(default_factory=ValidatorsConfig)
    relayer: RelayerConfig = field(default_factory=RelayerConfig)
    rpc: RPCConfig = field(default_factory=RPCConfig)
    log: LogConfig = field(default_factory=LogConfig)

    # --- factories --------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrinityConfig":
        """Create a config from a parsed TOML dict, layered over its network profile."""
        network = data.get("network", {}).get("name", str(TRINITY_NETWORK))
        if network not in NETWORK_PROFILES:
            raise ConfigurationError(
                f"Unknown network profile '{network}' (expected one of: {', '.join(NETWORK_PROFILES)})"
            )
        profile = NETWORK_PROFILES[network]

        def merged(section: str) -> Dict[str, Any]:
            return {**profile.get(section, {}), **data.get(section, {})}

        return cls(
            network=network,
            fees=FeeConfig.from_dict(merged("fees")),
            circuit_breaker=CircuitBreakerConfig.from_dict(merged("circuit_breaker")),
            merkle=MerkleConfig.from_dict(merged("merkle")),
            operations=OperationConfig.from_dict(merged("operations")),
            validators=ValidatorsConfig.from_dict(merged("validators")),
            relayer=RelayerConfig.from_dict(merged("relayer")),
            rpc=RPCConfig.from_dict(merged("rpc")),
            log=LogConfig.from_dict(merged("log")),
        )

    @classmethod
    def for_network(cls, network: str) -> "TrinityConfig":
        """Profile defaults only, no file and no environment."""
        return cls.from_dict({"network": {"name": network}})

    @classmethod
    def from_file(cls, config_path: str) -> "TrinityConfig":
        """
        Load configuration from a TOML file.

        A missing file is not an error: the profile defaults are used and
        environment overrides still apply.
        """
        path = Path(config_path)
        if path.exists():
            with open(path, "rb") as f:
                raw = tomli.load(f)
        else:
            logger.warning("Config file not found: %s, using defaults", config_path)
            raw = {}

        # The network env var picks the profile, so it has to apply first
        if v := os.environ.get("TRINITY_NETWORK"):
            raw.setdefault("network", {})["name"] = v

        cfg = cls.from_dict(raw)
        cfg.apply_env()
        return cfg

    # --- env overrides ----------------------------------------------------

    def apply_env(self) -> None:
        """Apply environment variable overrides to all sections."""
        self.circuit_breaker.apply_env()
        self.relayer.apply_env()
        self.rpc.apply_env()
        self.log.apply_env()

    # --- validation -------------------------------------------------------

    def validate(self) -> bool:
        """
        Validate all configuration sections.

        Raises:
            ConfigurationError: on invalid config
        """
        if self.log.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigurationError(f"Invalid log level: {self.log.level}")
        self.fees.validate()
        self.circuit_breaker.validate()
        self.merkle.validate()
        self.operations.validate()
        self.relayer.validate()
        return True

    # --- serialisation ----------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to dict (for diagnostics, NOT for re-creating TOML)."""
        result = asdict(self)
        result["network"] = {"name": self.network}
        return result


# -----------------------------------------------------------------------
# Convenience function
# -----------------------------------------------------------------------

def load_config(path: Optional[str] = None) -> TrinityConfig:
    """
    Load and validate configuration.

    Resolution order:
        1. Explicit *path* argument
        2. TRINITY_CONFIG env var
        3. ./config.toml in current directory
        4. Profile defaults (with env overrides)
    """
    if path is None:
        path = os.environ.get("TRINITY_CONFIG", "config.toml")

    cfg = TrinityConfig.from_file(path)
    cfg.validate()
    return cfg
