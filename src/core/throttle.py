"""Outbound flood control.

Each token permits one line. A consumed token comes back ``period`` seconds
after it was spent, so no sliding window of ``period`` seconds ever carries
more than ``capacity`` lines. Producers never block: lines queue in FIFO
order until a token frees up.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Iterable, List, Optional

from core.config import ThrottleConfig
from core.models import OutboundMessage

LOGGER = logging.getLogger(__name__)


class OutboundThrottle:
    """Token bucket shared by the router (producer) and the connection (consumer)."""

    def __init__(
        self,
        config: ThrottleConfig,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if config.capacity < 1:
            raise ValueError("throttle capacity must be at least 1")
        self._capacity = config.capacity
        self._period = config.period
        self._clock = clock
        self._queue: Deque[OutboundMessage] = deque()
        # Times at which spent tokens were consumed, oldest first.
        self._spent: Deque[float] = deque()
        self._wakeup: Optional[asyncio.Event] = None
        self._emptied: Optional[asyncio.Event] = None

    def __len__(self) -> int:
        return len(self._queue)

    def _event(self) -> asyncio.Event:
        if self._wakeup is None:
            self._wakeup = asyncio.Event()
        return self._wakeup

    def put(self, message: OutboundMessage) -> None:
        """Queue one line; never blocks and never drops."""

        self._queue.append(message)
        if self._wakeup is not None:
            self._wakeup.set()

    def requeue(self, message: OutboundMessage) -> None:
        """Put a line that failed to send back at the head of the queue."""

        self._queue.appendleft(message)
        if self._wakeup is not None:
            self._wakeup.set()

    def extend(self, messages: Iterable[OutboundMessage]) -> None:
        for message in messages:
            self.put(message)

    def _release_expired(self, now: float) -> None:
        while self._spent and now - self._spent[0] >= self._period:
            self._spent.popleft()

    def available(self, now: Optional[float] = None) -> int:
        """Tokens available at ``now``."""

        self._release_expired(self._clock() if now is None else now)
        return self._capacity - len(self._spent)

    def wait_time(self, now: Optional[float] = None) -> float:
        """Seconds until the next token frees up (0 when one is available)."""

        now = self._clock() if now is None else now
        if self.available(now) > 0:
            return 0.0
        return max(0.0, self._spent[0] + self._period - now)

    def poll(self, now: Optional[float] = None) -> Optional[OutboundMessage]:
        """Pop the oldest queued line if a token is available, else None."""

        now = self._clock() if now is None else now
        if not self._queue or self.available(now) <= 0:
            return None
        self._spent.append(now)
        message = self._queue.popleft()
        if not self._queue and self._emptied is not None:
            self._emptied.set()
        return message

    async def get(self) -> OutboundMessage:
        """Wait until a line is queued and a token is available, then pop it."""

        event = self._event()
        while True:
            if not self._queue:
                event.clear()
                await event.wait()
                continue
            message = self.poll()
            if message is not None:
                return message
            delay = self.wait_time()
            LOGGER.debug("Throttled: %s queued, next token in %.2fs", len(self._queue), delay)
            await asyncio.sleep(delay)

    async def wait_empty(self) -> None:
        """Wait until the consumer has taken every queued line."""

        if self._emptied is None:
            self._emptied = asyncio.Event()
        while self._queue:
            self._emptied.clear()
            await self._emptied.wait()

    def clear(self) -> List[OutboundMessage]:
        """Drop and return every line still queued."""

        unsent = list(self._queue)
        self._queue.clear()
        if self._emptied is not None:
            self._emptied.set()
        return unsent
