"""Shared chat text formatting helpers.

Keeping formatting here prevents drift between handlers and the router and
keeps replies consistent regardless of which feature produced them.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from core.models import Notification, SeenRecord

# (upper bound in seconds, singular phrase, unit seconds, unit name)
_ROUGH_STEPS = (
    (45, "a few seconds", 1, "second"),
    (90, "a minute", 60, "minute"),
    (45 * 60, None, 60, "minute"),
    (90 * 60, "an hour", 3600, "hour"),
    (22 * 3600, None, 3600, "hour"),
    (36 * 3600, "a day", 86400, "day"),
    (25 * 86400, None, 86400, "day"),
    (45 * 86400, "a month", 30 * 86400, "month"),
    (320 * 86400, None, 30 * 86400, "month"),
    (548 * 86400, "a year", 365 * 86400, "year"),
)


def format_elapsed(then: datetime, now: datetime) -> str:
    """Return a rough, past-tense description such as ``3 hours ago``."""

    seconds = max(0.0, (now - then).total_seconds())
    for bound, phrase, unit, name in _ROUGH_STEPS:
        if seconds < bound:
            if phrase:
                return f"{phrase} ago"
            count = max(2, round(seconds / unit))
            return f"{count} {name}s ago"
    years = max(2, round(seconds / (365 * 86400)))
    return f"{years} years ago"


def saying_snippet(text: str, limit: int) -> str:
    return f"saying: {text[:limit].strip()}"


def action_snippet(text: str, limit: int) -> str:
    return f"performing: {text[:limit].strip()}"


def kicked_snippet(channel: str) -> str:
    return f"being kicked from {channel}"


def format_seen(nickname: str, record: Optional[SeenRecord], now: datetime) -> str:
    if record is None:
        return f"{nickname} has not previously been seen"
    where = ""
    if record.channel and record.channel not in record.snippet:
        where = f" in {record.channel}"
    elapsed = format_elapsed(record.timestamp, now)
    return f"{record.nickname} was last seen {elapsed}{where} {record.snippet}"


def format_delivery(nickname: str, notification: Notification) -> str:
    return f"{nickname}, message from {notification.sender}: {notification.body}"


def format_tell_ack(recipient: str) -> str:
    return f"ok, I'll tell {recipient} that"
