"""Collaborator interfaces for the row store and its change feed.

Filters are plain dicts mapping a column to a value; a list/tuple/set value
means "column in values". ``any_of`` is a list of such dicts OR'ed together
(each dict is an AND of equalities). ``order`` is a list of
``(column, descending)`` pairs.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

Row = Dict[str, Any]
Filters = Dict[str, Any]
Order = List[Tuple[str, bool]]

FRIENDSHIPS = "friendships"
CONVERSATIONS = "conversations"
PARTICIPANTS = "conversation_participants"
MESSAGES = "messages"
PROFILES = "user_profile"


class ChangeEvent(BaseModel):
    type: str  # insert | update | delete
    table: str
    row: Row = Field(default_factory=dict)

    @classmethod
    def from_realtime(cls, table: str, payload: dict) -> "ChangeEvent":
        """Normalize a Realtime ``postgres_changes`` payload."""
        data = payload.get("data", payload)
        kind = data.get("type") or data.get("eventType") or ""
        kind = getattr(kind, "value", kind)
        row = (
            data.get("record")
            or data.get("new")
            or data.get("old_record")
            or data.get("old")
            or {}
        )
        return cls(type=str(kind).lower(), table=data.get("table", table), row=row)


EventHandler = Callable[[ChangeEvent], Awaitable[None]]
StatusHandler = Callable[[str], None]


class RowStore(ABC):
    @abstractmethod
    async def insert(self, table: str, row: Row) -> Row: ...

    @abstractmethod
    async def insert_many(self, table: str, rows: List[Row]) -> List[Row]: ...

    @abstractmethod
    async def get(self, table: str, key: Filters) -> Optional[Row]: ...

    @abstractmethod
    async def update(self, table: str, key: Filters, patch: Row) -> Row: ...

    @abstractmethod
    async def delete(self, table: str, key: Filters) -> None: ...

    @abstractmethod
    async def list(
        self,
        table: str,
        filters: Optional[Filters] = None,
        any_of: Optional[List[Filters]] = None,
        order: Optional[Order] = None,
        limit: Optional[int] = None,
    ) -> List[Row]: ...


class ChangeFeed(ABC):
    @abstractmethod
    async def subscribe(
        self,
        table: str,
        filter: str,
        on_event: EventHandler,
        on_status: Optional[StatusHandler] = None,
    ) -> Any:
        """Open a live subscription and return an opaque handle."""

    @abstractmethod
    async def unsubscribe(self, handle: Any) -> None: ...


def eq_filter(column: str, value) -> str:
    return f"{column}=eq.{value}"


def in_filter(column: str, values) -> str:
    return f"{column}=in.({','.join(str(v) for v in values)})"
