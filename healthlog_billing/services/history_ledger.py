"""Append-only subscription history ledger."""

from typing import Any, Protocol

import structlog
from supabase._async.client import AsyncClient as AsyncSupabaseClient

from healthlog_billing.models.subscription import HistoryEvent

logger = structlog.get_logger(__name__)


class HistoryLedger(Protocol):
    """Audit trail of entitlement-affecting events.

    ``append`` must never raise: the entitlement change is the critical
    effect, the audit row is secondary.
    """

    async def append(self, event: HistoryEvent) -> bool:
        """Record an event. Returns False if the write failed."""

    async def list_for_user(self, user_id: str, limit: int = 10) -> list[HistoryEvent]:
        """Most recent events for a user, newest first."""


class InMemoryHistoryLedger:
    """In-memory ledger used for tests and local fallback."""

    def __init__(self) -> None:
        self.events: list[HistoryEvent] = []

    async def append(self, event: HistoryEvent) -> bool:
        self.events.append(event.model_copy(deep=True))
        return True

    async def list_for_user(self, user_id: str, limit: int = 10) -> list[HistoryEvent]:
        mine = [e for e in self.events if e.user_id == user_id]
        mine.sort(key=lambda e: e.created_at, reverse=True)
        return [e.model_copy(deep=True) for e in mine[:limit]]


# HistoryEvent field -> subscription_history column
_COLUMNS: dict[str, str] = {
    "user_id": "user_id",
    "event_type": "event_type",
    "from_tier": "from_tier",
    "to_tier": "to_tier",
    "amount": "amount",
    "billing_period": "period",
    "external_event_id": "stripe_event_id",
    "external_invoice_id": "stripe_invoice_id",
    "metadata": "metadata",
    "created_at": "created_at",
}


def row_from_event(event: HistoryEvent) -> dict[str, Any]:
    data = event.model_dump(mode="json")
    return {column: data[field] for field, column in _COLUMNS.items()}


def event_from_row(row: dict[str, Any]) -> HistoryEvent:
    data = {field: row.get(column) for field, column in _COLUMNS.items()}
    data["metadata"] = data["metadata"] or {}
    return HistoryEvent.model_validate(data)


class SupabaseHistoryLedger:
    """Supabase-backed ledger over the ``subscription_history`` table."""

    def __init__(self, client: AsyncSupabaseClient, table: str = "subscription_history") -> None:
        self.client = client
        self.table = table

    async def append(self, event: HistoryEvent) -> bool:
        try:
            await self.client.table(self.table).insert(row_from_event(event)).execute()
        except Exception as e:
            logger.error(
                "history_append_failed",
                user_id=event.user_id,
                event_type=event.event_type.value,
                external_event_id=event.external_event_id,
                error=str(e),
            )
            return False
        return True

    async def list_for_user(self, user_id: str, limit: int = 10) -> list[HistoryEvent]:
        response = (
            await self.client.table(self.table)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .limit(limit)
            .execute()
        )
        return [event_from_row(row) for row in response.data or []]
