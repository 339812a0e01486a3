"""
Repository pattern for data access.

SQLite backend for completed exchanges, used for local runs and by the
command line.
"""

import sqlite3
import uuid
from datetime import datetime, timezone
from typing import List, Optional

from chat_cost_relay.config.loader import DEFAULT_SQLITE_PATH
from chat_cost_relay.errors import PersistenceFailure

from .db import get_connection
from .models import ExchangeRecord, UsageSummary

_COLUMNS = "id, user_id, message, timestamp, model, tokens_used, cost"


def initialize_schema(db_path: str = DEFAULT_SQLITE_PATH) -> None:
    """Create the chat_messages table if it doesn't exist.

    This creates an append-only ledger of exchanges.
    No UPDATE or DELETE operations should ever be performed on this table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS chat_messages (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                message TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                model TEXT,
                tokens_used INTEGER,
                cost REAL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_chat_messages_user ON chat_messages (user_id)"
        )
        conn.commit()
    finally:
        conn.close()


def _row_to_record(row) -> ExchangeRecord:
    return ExchangeRecord(
        id=row[0],
        user_id=row[1],
        message=row[2],
        timestamp=datetime.fromisoformat(row[3]),
        model=row[4],
        tokens_used=row[5],
        cost=row[6],
    )


class SqliteExchangeRepository:
    """Exchange store backed by a local SQLite file.

    Every call opens and closes its own connection so the repository can
    be used from worker threads.
    """

    def __init__(self, db_path: str = DEFAULT_SQLITE_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def record_exchange(
        self,
        user_id: str,
        message: str,
        model: Optional[str] = None,
        tokens: Optional[int] = None,
        cost: Optional[float] = None,
    ) -> ExchangeRecord:
        """Append one exchange to the ledger.

        Raises:
            PersistenceFailure: If the insert fails
        """
        record = ExchangeRecord(
            id=str(uuid.uuid4()),
            user_id=user_id,
            message=message,
            timestamp=datetime.now(timezone.utc),
            model=model,
            tokens_used=tokens,
            cost=cost,
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO chat_messages ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.user_id,
                    record.message,
                    record.timestamp.isoformat(),
                    record.model,
                    record.tokens_used,
                    record.cost,
                ),
            )
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceFailure(f"Failed to save chat message: {e}") from e
        finally:
            conn.close()
        return record

    def fetch_history(self, user_id: str) -> List[ExchangeRecord]:
        """All exchanges of ``user_id``, oldest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                f"SELECT {_COLUMNS} FROM chat_messages WHERE user_id = ? ORDER BY timestamp ASC, seq ASC",
                (user_id,),
            )
            return [_row_to_record(row) for row in cursor.fetchall()]
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Failed to fetch chat history: {e}") from e
        finally:
            conn.close()

    def get_usage_summary(self, user_id: str) -> UsageSummary:
        """Token, cost and message totals for ``user_id``."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                """
                SELECT
                    COALESCE(SUM(tokens_used), 0),
                    COALESCE(SUM(cost), 0),
                    COUNT(*)
                FROM chat_messages
                WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Failed to fetch user usage: {e}") from e
        finally:
            conn.close()

        return UsageSummary(
            total_tokens=int(row[0]),
            total_cost=float(row[1]),
            message_count=int(row[2]),
        )
