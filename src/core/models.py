"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to the wire format or to the SQLite schema.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Optional, Sequence, Union


@dataclass(frozen=True)
class ParsedMessage:
    """One decoded protocol line."""

    command: str
    params: tuple[str, ...] = ()
    trailing: Optional[str] = None
    prefix: Optional[str] = None
    tags: dict[str, str] = field(default_factory=dict, compare=False)

    @property
    def nick(self) -> Optional[str]:
        """Nickname part of the prefix (``nick!user@host``), if any."""

        if not self.prefix:
            return None
        return self.prefix.split("!", 1)[0].split("@", 1)[0]

    @property
    def args(self) -> tuple[str, ...]:
        """All parameters, with the trailing one appended when present."""

        if self.trailing is None:
            return self.params
        return self.params + (self.trailing,)


@dataclass(frozen=True)
class OutboundMessage:
    """A line the bot wants to send.

    ``notification_id`` ties a memo delivery line to its stored memo so the
    memo can be returned to the queue if the line is never sent.
    """

    command: str
    params: tuple[str, ...] = ()
    trailing: Optional[str] = None
    notification_id: Optional[int] = field(default=None, compare=False)


@dataclass(frozen=True)
class SeenRecord:
    """Last observation of an identity."""

    identity: str
    nickname: str
    timestamp: datetime
    snippet: str
    channel: Optional[str]


@dataclass(frozen=True)
class Notification:
    """A memo waiting for its recipient to speak."""

    sender: str
    recipient: str
    body: str
    created_at: datetime
    id: Optional[int] = None
    delivered: bool = False


@dataclass(frozen=True)
class ChatContext:
    """Minimal view of a chat line used by the router and handlers."""

    nick: str
    identity: str
    target: str
    reply_to: str
    text: str
    date: datetime
    is_action: bool = False
    addressed: bool = False
    command: Optional[str] = None
    args: tuple[str, ...] = ()
    rest: str = ""

    @property
    def channel(self) -> Optional[str]:
        return self.target if is_channel_name(self.target) else None


@dataclass(frozen=True)
class ImmediateText:
    """Handler output available right away."""

    lines: tuple[str, ...]


@dataclass(frozen=True)
class Deferred:
    """Handler output produced later by ``work``.

    ``work`` is a zero-argument coroutine factory so the router can apply a
    timeout to the whole call.
    """

    work: Callable[[], Awaitable[Sequence[str]]]


@dataclass(frozen=True)
class Error:
    """A user-visible failure line."""

    text: str


HandlerOutcome = Union[ImmediateText, Deferred, Error]


def is_channel_name(name: str) -> bool:
    return bool(name) and name[0] in "#&+!"
