"""Ports (interfaces) used by the core runtime.

Ports define the minimal contracts for storage and data-provider adapters so
that the core can be reused with different backends.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Protocol, Sequence

from core.models import Notification, SeenRecord


class StoragePort(Protocol):
    """Storage operations required by the router and handlers."""

    def record_seen(
        self,
        nickname: str,
        timestamp: datetime,
        snippet: str,
        channel: Optional[str],
    ) -> None:
        ...

    def get_seen(self, nickname: str) -> Optional[SeenRecord]:
        ...

    def enqueue_notification(self, notification: Notification) -> Notification:
        ...

    def drain_due_notifications(self, nickname: str, limit: int) -> List[Notification]:
        ...

    def requeue_notifications(self, ids: Sequence[int]) -> None:
        ...

    def set_location(self, nickname: str, location: str) -> None:
        ...

    def get_location(self, nickname: str) -> Optional[str]:
        ...


class ProviderPort(Protocol):
    """A data provider: one query in, formatted text out, HandlerError on failure."""

    async def fetch(self, query: str) -> str:
        ...
