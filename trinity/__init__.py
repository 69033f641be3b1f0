"""
Trinity Protocol consensus core

2-of-3 cross-ledger consensus over Ethereum, Solana and TON. Core imports are
lazily loaded so that importing the package does not pull in the HTTP stack:

    from trinity.consensus import ConsensusCoordinator
    from trinity.relayer import Relayer
    from trinity.exceptions import DuplicateProofError
"""

__version__ = "1.0.0"


def __getattr__(name):
    """Lazy module loading."""
    if name == 'ConsensusCoordinator':
        from .consensus import ConsensusCoordinator
        return ConsensusCoordinator
    elif name == 'Relayer':
        from .relayer import Relayer
        return Relayer
    elif name == 'load_config':
        from .config import load_config
        return load_config
    raise AttributeError(f"module 'trinity' has no attribute {name!r}")

__all__ = ['ConsensusCoordinator', 'Relayer', 'load_config', '__version__']
