"""
Console and file logging for upgrade and snapshot cleanup runs.

Workers log concurrently, so the file handler also records the thread name
(``upgrade-worker-N``). Passwords read at startup are registered with
``register_secret`` and masked in every record either handler writes.
"""

import logging
import sys
import threading
from typing import Set

UPGRADE_LOG = "os-upgrade.log"
CLEANUP_LOG = "snapshot-cleanup.log"

CONSOLE_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"
FILE_FORMAT = "%(asctime)s - %(levelname)s - %(threadName)s - %(name)s - %(message)s"
MASK = "********"

# Chatty at DEBUG and may echo request bodies
_QUIET_LOGGERS = ("urllib3", "requests")


class SecretFilter(logging.Filter):
    """Replaces registered secrets in the formatted message."""

    def __init__(self):
        super().__init__()
        self._lock = threading.Lock()
        self._secrets: Set[str] = set()

    def add(self, secret: str) -> None:
        if secret:
            with self._lock:
                self._secrets.add(secret)

    def filter(self, record: logging.LogRecord) -> bool:
        with self._lock:
            secrets = sorted(self._secrets, key=len, reverse=True)
        if not secrets:
            return True
        message = record.getMessage()
        masked = message
        for secret in secrets:
            masked = masked.replace(secret, MASK)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


_secret_filter = SecretFilter()


def register_secret(secret: str) -> None:
    """Mask ``secret`` in all log output from now on."""
    _secret_filter.add(secret)


def setup_logging(verbose: bool = False, log_file: str = UPGRADE_LOG) -> logging.Logger:
    """
    Log to stdout and to ``log_file``, replacing any earlier configuration.

    Args:
        verbose: Log phase durations, poll attempts and HTTP retries (DEBUG)
        log_file: UPGRADE_LOG or CLEANUP_LOG, depending on the mode

    Returns:
        Logger for this module
    """
    console = logging.StreamHandler(sys.stdout)
    console.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    file_handler = logging.FileHandler(log_file)
    file_handler.setFormatter(logging.Formatter(FILE_FORMAT))

    for handler in (console, file_handler):
        handler.addFilter(_secret_filter)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        handlers=[console, file_handler],
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logging.getLogger(__name__)
