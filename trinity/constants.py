"""
Trinity constants

Protocol parameters shared by the coordinator, the fee engine and the relayer,
plus the handful of node settings that may come from a `.env` file. The
`.env` values are wrapped so the shipped default stays reachable through
``.default()`` when a supplied value turns out to be unusable.
"""
import re

from dotenv import dotenv_values

# ==================================================================================
# CONSENSUS PARAMETERS
# ==================================================================================
# Changing any of these on a live deployment splits the coordinator from the
# ledger-side validators.
TOTAL_LEDGERS = 3
REQUIRED_CONFIRMATIONS = 2  # 2-of-3
RESUME_APPROVALS_REQUIRED = 2  # ledgers needed to lift an automatic pause early


# ==================================================================================
# FEE PARAMETERS
# ==================================================================================
BPS_DENOMINATOR = 10_000
VALIDATOR_SHARE_PCT = 80
PROTOCOL_SHARE_PCT = 20
CANCELLATION_REFUND_PCT = 80

# floor(80%) + floor(20%) can lose at most 2 units
MAX_SPLIT_DUST = 3

SPEED_MULTIPLIER_BPS = 15_000  # 1.5x
MIN_SECURITY_MULTIPLIER_BPS = 12_000  # 1.2x
MAX_SECURITY_MULTIPLIER_BPS = 20_000  # 2.0x


# ==================================================================================
# MERKLE PARAMETERS
# ==================================================================================
HASH_LENGTH = 32
DEFAULT_MAX_PROOF_DEPTH = 10

VALID_HASH_PATTERN = re.compile(r'^0x[0-9a-fA-F]{64}$')
VALID_ADDRESS_PATTERN = re.compile(r'^0x[0-9a-fA-F]{40}$')


# ==================================================================================
# .ENV SETTINGS
# ==================================================================================
class ConfigString(str):
    """A `.env` string that remembers the shipped default."""

    def __new__(cls, value: str, default: str):
        obj = super().__new__(cls, value)
        obj._default = default
        return obj

    def default(self) -> str:
        return self._default


class ConfigBool(int):
    """A `.env` flag; truthiness is the value, ``default()`` the shipped one."""

    def __new__(cls, value: bool, default: bool):
        obj = super().__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self) -> bool:
        return self._default

    def __eq__(self, other):
        return bool(self) == other

    def __repr__(self):
        return repr(bool(self))

    __str__ = __repr__
    __hash__ = int.__hash__


_env = dotenv_values(".env")
_BOOL_WORDS = {"true": True, "yes": True, "1": True, "false": False, "no": False, "0": False}


def _setting(name: str, default: str) -> ConfigString:
    value = _env.get(name)
    return ConfigString(default if value is None else value.strip(), default)


def _flag(name: str, default: bool) -> ConfigBool:
    value = _env.get(name)
    if value is None:
        return ConfigBool(default, default)
    return ConfigBool(_BOOL_WORDS.get(value.strip().lower(), default), default)


TRINITY_NETWORK = _setting('TRINITY_NETWORK', 'mainnet')
TRINITY_RPC_HOST = _setting('TRINITY_RPC_HOST', '127.0.0.1')
TRINITY_RPC_PORT = _setting('TRINITY_RPC_PORT', '3017')
TRINITY_COORDINATOR_URL = _setting('TRINITY_COORDINATOR_URL', 'http://127.0.0.1:3017')
TRINITY_NONCE_FILE = _setting('TRINITY_NONCE_FILE', './data/relayer-nonces.json')

LOG_LEVEL = _setting('LOG_LEVEL', 'INFO')
LOG_FORMAT = _setting('LOG_FORMAT', '%(asctime)s - %(levelname)s - %(name)s - %(message)s')
LOG_DATE_FORMAT = _setting('LOG_DATE_FORMAT', '%Y-%m-%dT%H:%M:%S')
LOG_CONSOLE_HIGHLIGHTING = _flag('LOG_CONSOLE_HIGHLIGHTING', True)
LOG_FILE_OUTPUT = _flag('LOG_FILE_OUTPUT', False)

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5
