"""
Shared machinery for the alert and incident engines.

Each engine keeps its records in memory keyed by id, serializes writes per
record with one asyncio.Lock per id, and sends notifications without
waiting for delivery: dispatch runs as a background task whose reference
is held until it finishes.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Callable, Generic, Optional, TypeVar

from ddos_guard.errors import RecordNotFoundError
from ddos_guard.models.notification import NotificationPayload
from ddos_guard.notifications.router import NotificationRouter

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordEngine(Generic[RecordT]):
    record_kind = "record"

    def __init__(
        self,
        router: Optional[NotificationRouter] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.router = router
        self._clock = clock
        self._records: dict[str, RecordT] = {}
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._pending: set[asyncio.Task] = set()

    def get(self, record_id: str) -> RecordT:
        try:
            return self._records[record_id]
        except KeyError:
            raise RecordNotFoundError(f"No {self.record_kind} with id '{record_id}'") from None

    def _lock_for(self, record_id: str) -> asyncio.Lock:
        self.get(record_id)   # unknown ids fail before a lock is created
        return self._locks[record_id]

    def _store(self, record_id: str, record: RecordT) -> None:
        self._records[record_id] = record

    def _notify(self, payload: NotificationPayload) -> None:
        if self.router is None:
            return
        task = asyncio.create_task(self.router.dispatch(payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for every notification dispatched so far to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
