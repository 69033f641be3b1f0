"""
Trinity Configuration

Loads all sections of config.toml at startup, layered over a network profile.
Environment variables override TOML values.
"""

from .loader import (
    CircuitBreakerConfig,
    FeeConfig,
    LogConfig,
    MerkleConfig,
    NETWORK_PROFILES,
    OperationConfig,
    RelayerConfig,
    RPCConfig,
    TrinityConfig,
    ValidatorsConfig,
    load_config,
)

__all__ = [
    "CircuitBreakerConfig",
    "FeeConfig",
    "LogConfig",
    "MerkleConfig",
    "NETWORK_PROFILES",
    "OperationConfig",
    "RelayerConfig",
    "RPCConfig",
    "TrinityConfig",
    "ValidatorsConfig",
    "load_config",
]
