"""
Data models for storage layer.

Defines the persisted exchange and the aggregates read back from it.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol


@dataclass(frozen=True)
class ExchangeRecord:
    """Immutable record of one completed chat exchange.

    Written once per exchange and never modified afterwards.
    """
    user_id: str
    message: str
    model: Optional[str] = None
    tokens_used: Optional[int] = None
    cost: Optional[float] = None
    id: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "message": self.message,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "model": self.model,
            "tokens_used": self.tokens_used,
            "cost": self.cost,
        }


@dataclass(frozen=True)
class UsageSummary:
    """Totals across every exchange of one user."""
    total_tokens: int = 0
    total_cost: float = 0.0
    message_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTokens": self.total_tokens,
            "totalCost": self.total_cost,
            "messageCount": self.message_count,
        }


class ExchangeStore(Protocol):
    """Durable store for exchanges; the relay's only persistence seam."""

    def record_exchange(
        self,
        user_id: str,
        message: str,
        model: Optional[str] = None,
        tokens: Optional[int] = None,
        cost: Optional[float] = None,
    ) -> ExchangeRecord: ...

    def fetch_history(self, user_id: str) -> List[ExchangeRecord]: ...

    def get_usage_summary(self, user_id: str) -> UsageSummary: ...
