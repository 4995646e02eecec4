"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so the app layer can build them safely.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class ServerConfig:
    """Connection and registration settings for the single server."""

    host: str
    port: int
    nickname: str
    username: str
    realname: str
    channels: tuple[str, ...] = ()
    tls: bool = False
    password: Optional[str] = None
    nickserv_password: Optional[str] = None
    join_on_invite: bool = False
    connect_timeout: float = 15.0
    register_timeout: float = 60.0
    join_timeout: float = 10.0
    max_nick_attempts: int = 5


@dataclass(frozen=True)
class BackoffConfig:
    """Reconnect delay: capped doubling with proportional jitter."""

    base_delay: float = 2.0
    max_delay: float = 300.0
    multiplier: float = 2.0
    jitter: float = 0.1


@dataclass(frozen=True)
class ThrottleConfig:
    """At most ``capacity`` lines may leave within any ``period`` seconds."""

    capacity: int = 4
    period: float = 8.0


@dataclass(frozen=True)
class RouterConfig:
    """Command routing settings consumed by the router."""

    per_turn_cap: int = 2
    handler_timeout: float = 12.0
    shutdown_grace: float = 5.0
    snippet_chars: int = 300
    ignored_nicks: frozenset[str] = field(default_factory=frozenset)
