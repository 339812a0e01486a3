"""
SQLite connection handling for the local exchange store.

Connections are short-lived: the repository opens one per call, usually
from a worker thread.
"""

import sqlite3
from pathlib import Path

from chat_cost_relay.config.loader import DEFAULT_SQLITE_PATH

BUSY_TIMEOUT_SECONDS = 5.0


def get_connection(db_path: str = DEFAULT_SQLITE_PATH) -> sqlite3.Connection:
    """Open the exchange database, creating its directory if needed.

    Concurrent relays may finish at the same moment; a locked database is
    waited on for up to ``BUSY_TIMEOUT_SECONDS`` before the write fails.
    """
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    return sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
