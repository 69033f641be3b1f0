"""
Trinity logging

Process-wide logging for the coordinator, the relayer and the HTTP API.
Console output goes through rich; a size-rotated file under ``logs/`` can be
switched on with LOG_FILE_OUTPUT or the ``[log]`` config section.

    from trinity.logger import get_logger
    logger = get_logger(__name__)
"""

import logging
import logging.handlers
import re
import sys
import threading
import time
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.highlighter import RegexHighlighter
from rich.logging import RichHandler
from rich.theme import Theme

from .constants import (
    LOG_BACKUP_COUNT,
    LOG_CONSOLE_HIGHLIGHTING,
    LOG_DATE_FORMAT,
    LOG_FILE_OUTPUT,
    LOG_FORMAT,
    LOG_LEVEL,
    LOG_MAX_FILE_SIZE,
)

LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
LOG_FILE_PATH = LOG_DIR / "trinity.log"

# third-party loggers and the level they are held at
QUIET_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "uvicorn.access": logging.WARNING,
    "uvicorn": logging.ERROR,
    "uvicorn.error": logging.ERROR,
}

THEME = Theme({
    "trinity.breaker": "bold red reverse",
    "trinity.operation": "cyan",
    "trinity.address": "magenta",
    "trinity.ledger": "bold blue",
    "trinity.executed": "bold green",
    "trinity.terminal": "bold yellow",
    "trinity.critical": "bold red reverse",
    "trinity.error": "bold red",
    "trinity.warning": "bold yellow",
    "trinity.info": "bold green",
    "trinity.debug": "dim",
    "trinity.url": "underline cyan",
    "trinity.timestamp": "bold cyan",
})


class TerminalSafeFormatter(logging.Formatter):
    """
    Removes escape sequences and control characters from formatted records.

    Proof fields, addresses and error bodies from remote validators are logged
    as received, so a hostile validator must not be able to forge log lines
    or drive the terminal.
    """

    _unsafe = re.compile(
        r"\x1b\[[0-?]*[ -/]*[@-~]"      # CSI sequences
        r"|\x1b[@-Z\\-_]"                # two-byte escapes
        r"|[\x00-\x08\x0B-\x1F\x7F]"     # controls, keeping \t and \n
    )

    @classmethod
    def sanitize(cls, text: str) -> str:
        return cls._unsafe.sub("", text) if text else text

    def format(self, record: logging.LogRecord) -> str:
        return self.sanitize(super().format(record))


class TrinityLogHighlighter(RegexHighlighter):
    base_style = "trinity."
    highlights = [
        r"(?P<breaker>(?i:circuit breaker)[^:]*)",
        r"(?P<operation>\b0x[0-9a-fA-F]{64}\b)",
        r"(?P<address>\b0x[0-9a-fA-F]{40}\b)",
        r"(?P<ledger>\b(?:ETHEREUM|SOLANA|TON)\b)",
        r"(?P<executed>\b(?:EXECUTED|VERIFIED)\b)",
        r"(?P<terminal>\b(?:CANCELLED|EXPIRED)\b)",
        r"(?P<critical>\bCRITICAL\b)",
        r"(?P<error>\bERROR\b)",
        r"(?P<warning>\bWARNING\b)",
        r"(?P<info>\bINFO\b)",
        r"(?P<debug>\bDEBUG\b)",
        r"(?P<url>https?://[^\s)]+)",
        r"(?P<timestamp>^\S+ UTC)",
    ]


def _usable_format(fmt: str) -> str:
    """*fmt* if it formats a record cleanly, otherwise the shipped default."""
    fmt = str(fmt or "")
    probe = logging.LogRecord("trinity", logging.INFO, "", 0, "probe", (), None)
    try:
        rendered = logging.Formatter(fmt).format(probe)
    except (ValueError, KeyError, TypeError):
        rendered = ""
    if "probe" not in rendered:
        sys.stderr.write(f"trinity.logger: unusable LOG_FORMAT {fmt!r}, using default\n")
        return str(LOG_FORMAT.default())
    return fmt


def _usable_date_format(datefmt: str) -> str:
    datefmt = str(datefmt or "")
    if "%" not in datefmt:
        sys.stderr.write(f"trinity.logger: unusable LOG_DATE_FORMAT {datefmt!r}, using default\n")
        return str(LOG_DATE_FORMAT.default())
    try:
        time.strftime(datefmt, time.gmtime(0))
    except ValueError:
        return str(LOG_DATE_FORMAT.default())
    return datefmt


class LogManager:
    """
    Singleton owner of the root logger's handlers.

    ``configure`` only acts once; ``reconfigure`` replaces the handlers, which
    is how the CLI applies the ``[log]`` section after reading config.toml.
    """

    _instance: Optional["LogManager"] = None
    _lock = threading.RLock()

    def __new__(cls) -> "LogManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._configured = False
        return cls._instance

    @property
    def is_configured(self) -> bool:
        return self._configured

    def configure(
        self,
        log_level: Optional[str] = None,
        log_file: Optional[Path] = None,
        console_output: bool = True,
        file_output: Optional[bool] = None,
    ) -> None:
        with self._lock:
            if self._configured:
                return

            level = getattr(logging, str(log_level or LOG_LEVEL).upper(), logging.INFO)
            root = logging.getLogger()
            root.setLevel(level)
            for handler in list(root.handlers):
                root.removeHandler(handler)
            for name, quiet_level in QUIET_LOGGERS.items():
                logging.getLogger(name).setLevel(quiet_level)

            formatter = TerminalSafeFormatter(
                fmt=_usable_format(LOG_FORMAT),
                datefmt=_usable_date_format(LOG_DATE_FORMAT) + " UTC",
            )
            formatter.converter = time.gmtime

            handlers = []
            if console_output:
                handlers.append(self._console_handler())
            if LOG_FILE_OUTPUT if file_output is None else file_output:
                handlers.append(self._file_handler(log_file or LOG_FILE_PATH))

            for handler in handlers:
                handler.setLevel(level)
                handler.setFormatter(formatter)
                root.addHandler(handler)

            self._configured = True

    @staticmethod
    def _console_handler() -> logging.Handler:
        if not LOG_CONSOLE_HIGHLIGHTING:
            return logging.StreamHandler(sys.stderr)
        # time, level and path are already in LOG_FORMAT
        return RichHandler(
            console=Console(theme=THEME, highlight=False, stderr=True),
            highlighter=TrinityLogHighlighter(),
            keywords=[],
            markup=False,
            rich_tracebacks=True,
            show_time=False,
            show_level=False,
            show_path=False,
        )

    @staticmethod
    def _file_handler(path: Path) -> logging.Handler:
        path.parent.mkdir(parents=True, exist_ok=True)
        return logging.handlers.RotatingFileHandler(
            str(path),
            maxBytes=LOG_MAX_FILE_SIZE,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )

    def reconfigure(self, **kwargs) -> None:
        with self._lock:
            self._configured = False
            self.configure(**kwargs)

    def get_logger(self, name: str) -> logging.Logger:
        if not self._configured:
            self.configure()
        return logging.getLogger(name)


_manager = LogManager()


def get_logger(name: str) -> logging.Logger:
    return _manager.get_logger(name)


def configure_logging(**kwargs) -> None:
    """Replace the logging setup, e.g. once the config file has been read."""
    _manager.reconfigure(**kwargs)


_manager.configure()
