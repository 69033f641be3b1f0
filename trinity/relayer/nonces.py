"""
Relayer nonce table: ledger -> next nonce for this relayer's submissions.

Persisted as JSON and replaced atomically on every change, so a restart
neither replays a nonce nor skips one.
"""

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional

from ..consensus.types import LedgerId
from ..logger import get_logger

logger = get_logger(__name__)


class NonceTable:
    """
    Args:
        path: JSON file to persist to. None keeps the table in memory only.
    """

    def __init__(self, path: Optional[str] = None):
        self._path = Path(path) if path else None
        self._nonces: Dict[LedgerId, int] = {}
        self._lock = threading.Lock()
        self._load()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        with open(self._path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        self._nonces = {LedgerId(int(k)): int(v) for k, v in raw.items()}
        logger.info(f"Loaded relayer nonces from {self._path}: {self.to_dict()}")

    def _persist(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(self._path.parent), prefix=".nonces-", suffix=".json")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(self.to_dict(), f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self._path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def peek(self, ledger: LedgerId) -> int:
        """Nonce the next submission to *ledger* must carry."""
        return self._nonces.get(LedgerId(ledger), 0)

    def advance(self, ledger: LedgerId) -> int:
        """Mark the current nonce used. Returns the new next nonce."""
        with self._lock:
            ledger = LedgerId(ledger)
            self._nonces[ledger] = self._nonces.get(ledger, 0) + 1
            self._persist()
            return self._nonces[ledger]

    def set(self, ledger: LedgerId, value: int) -> None:
        """Resynchronize with the ledger's view after a nonce mismatch."""
        with self._lock:
            ledger = LedgerId(ledger)
            if value < 0:
                raise ValueError("nonce must be >= 0")
            logger.warning(f"Resyncing {ledger.name} nonce {self._nonces.get(ledger, 0)} -> {value}")
            self._nonces[ledger] = value
            self._persist()

    def to_dict(self) -> Dict[str, int]:
        return {str(int(k)): v for k, v in sorted(self._nonces.items())}
