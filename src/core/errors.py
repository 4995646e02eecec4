"""Error taxonomy shared by the core and adapters.

Only startup failures are allowed to end the process; every other category
is caught at the layer that owns it.
"""

from __future__ import annotations


class BotError(Exception):
    """Base class for every bootbot error."""


class TransportError(BotError):
    """The connection to the server was lost or could not be opened."""


class ProtocolDecodeError(BotError):
    """An inbound line could not be decoded."""


class MalformedLine(ProtocolDecodeError):
    """The line violates minimal framing rules (no command, too long)."""


class HandlerError(BotError):
    """A feature handler failed; ``user_text`` is shown in the channel."""

    def __init__(self, user_text: str) -> None:
        super().__init__(user_text)
        self.user_text = user_text


class ProviderTimeout(HandlerError):
    """An external data provider did not answer in time."""


class StoreError(BotError):
    """The persistent store is unavailable for the operation in progress."""
