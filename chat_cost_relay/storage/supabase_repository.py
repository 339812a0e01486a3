"""
Supabase-backed exchange store.

Production backend: exchanges live in the managed Postgres table
``chat_messages`` and are written through the Supabase REST client.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from postgrest.exceptions import APIError
from supabase import Client, create_client

from chat_cost_relay.errors import Misconfigured, PersistenceFailure

from .models import ExchangeRecord, UsageSummary

TABLE = "chat_messages"


def create_supabase_client(url: str, key: Optional[str]) -> Client:
    """Create the service-role client shared by storage and auth.

    Raises:
        Misconfigured: If the URL or key is missing
    """
    if not url or not key:
        raise Misconfigured("Supabase is not configured (SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY).")
    return create_client(url, key)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _row_to_record(row: Dict[str, Any]) -> ExchangeRecord:
    return ExchangeRecord(
        id=row.get("id"),
        user_id=row["user_id"],
        message=row["message"],
        timestamp=_parse_timestamp(row.get("timestamp")),
        model=row.get("model"),
        tokens_used=row.get("tokens_used"),
        cost=row.get("cost"),
    )


class SupabaseExchangeRepository:
    """Exchange store backed by Supabase."""

    def __init__(self, client: Client):
        self.client = client

    def record_exchange(
        self,
        user_id: str,
        message: str,
        model: Optional[str] = None,
        tokens: Optional[int] = None,
        cost: Optional[float] = None,
    ) -> ExchangeRecord:
        """Insert one exchange and return the stored row.

        Raises:
            PersistenceFailure: If Supabase rejects the insert or is unreachable
        """
        payload = {
            "user_id": user_id,
            "message": message,
            "model": model,
            "tokens_used": tokens,
            "cost": cost,
        }
        try:
            response = self.client.table(TABLE).insert(payload).execute()
        except (APIError, httpx.HTTPError) as e:
            raise PersistenceFailure(f"Failed to save chat message: {e}") from e

        if not response.data:
            raise PersistenceFailure("Failed to save chat message: no row returned")
        return _row_to_record(response.data[0])

    def fetch_history(self, user_id: str) -> List[ExchangeRecord]:
        """All exchanges of ``user_id``, oldest first."""
        try:
            response = (
                self.client.table(TABLE)
                .select("*")
                .eq("user_id", user_id)
                .order("timestamp", desc=False)
                .execute()
            )
        except (APIError, httpx.HTTPError) as e:
            raise PersistenceFailure(f"Failed to fetch chat history: {e}") from e
        return [_row_to_record(row) for row in response.data or []]

    def get_usage_summary(self, user_id: str) -> UsageSummary:
        """Token, cost and message totals for ``user_id``."""
        try:
            response = (
                self.client.table(TABLE)
                .select("tokens_used, cost")
                .eq("user_id", user_id)
                .execute()
            )
        except (APIError, httpx.HTTPError) as e:
            raise PersistenceFailure(f"Failed to fetch user usage: {e}") from e

        rows = response.data or []
        return UsageSummary(
            total_tokens=sum(row.get("tokens_used") or 0 for row in rows),
            total_cost=float(sum(row.get("cost") or 0 for row in rows)),
            message_count=len(rows),
        )
