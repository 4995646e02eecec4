"""Feature handlers.

Every handler exposes ``name``, ``usage``, ``matches(context)`` and
``handle(context, store) -> HandlerOutcome``. ``handle`` runs inline on the
read loop and must not do network I/O; slow work is returned as a Deferred
outcome which the router schedules as its own task.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Callable, Iterable, List, Optional, Sequence

from core.errors import HandlerError
from core.formatting import format_seen, format_tell_ack
from core.models import (
    ChatContext,
    Deferred,
    Error,
    HandlerOutcome,
    ImmediateText,
    Notification,
)
from core.ports import ProviderPort, StoragePort

LOGGER = logging.getLogger(__name__)

URL_PATTERN = re.compile(r"https?://[^\s<>\"'\x00-\x1f]+", re.IGNORECASE)
TITLE_MARKER = "↪"
_ADDRESS_PUNCTUATION = ":,"


def command_trigger(*words: str) -> Callable[[ChatContext], bool]:
    """Predicate matching addressed lines whose command word is one of ``words``."""

    accepted = {word.lower() for word in words}

    def _matches(context: ChatContext) -> bool:
        return context.addressed and context.command in accepted

    return _matches


def find_urls(text: str, limit: int) -> List[str]:
    """Return unique URLs in order of appearance, trailing punctuation removed."""

    urls: List[str] = []
    for match in URL_PATTERN.finditer(text):
        url = match.group(0).rstrip(".,;:!?)]}")
        if url not in urls:
            urls.append(url)
        if len(urls) >= limit:
            break
    return urls


class SeenHandler:
    """``seen <nick>``: when was a nickname last observed."""

    name = "seen"
    usage = "seen <nick>"

    def __init__(self) -> None:
        self.matches = command_trigger("seen")

    def handle(self, context: ChatContext, store: StoragePort) -> HandlerOutcome:
        if not context.args:
            return ImmediateText((f"Hint: {self.usage}",))
        nickname = context.args[0]
        record = store.get_seen(nickname)
        return ImmediateText((format_seen(nickname, record, context.date),))


class TellHandler:
    """``tell <nick> <message>``: leave a memo delivered when <nick> next speaks."""

    name = "tell"
    usage = "tell <nick> <message>"

    def __init__(self) -> None:
        self.matches = command_trigger("tell")

    def handle(self, context: ChatContext, store: StoragePort) -> HandlerOutcome:
        if len(context.args) < 2:
            return ImmediateText((f"Hint: {self.usage}",))
        recipient = context.args[0].rstrip(_ADDRESS_PUNCTUATION)
        body = " ".join(context.args[1:])
        store.enqueue_notification(
            Notification(
                sender=context.nick,
                recipient=recipient,
                body=body,
                created_at=context.date,
            )
        )
        LOGGER.info("Queued memo from %s for %s", context.nick, recipient)
        return ImmediateText((format_tell_ack(recipient),))


class StaticTextHandler:
    """A command answering with fixed text (``repo``)."""

    def __init__(self, name: str, text: str) -> None:
        self.name = name
        self.usage = name
        self._text = text
        self.matches = command_trigger(name)

    def handle(self, context: ChatContext, store: StoragePort) -> HandlerOutcome:
        return ImmediateText((self._text,))


class HelpHandler:
    """``help``: list every registered command usage."""

    name = "help"
    usage = "help"

    def __init__(self, usages: Callable[[], Iterable[str]]) -> None:
        self._usages = usages
        self.matches = command_trigger("help")

    def handle(self, context: ChatContext, store: StoragePort) -> HandlerOutcome:
        return ImmediateText((f"Commands: {' | '.join(self._usages())}",))


class ProviderHandler:
    """Forward the command argument to an external provider.

    With ``remember_location`` the last query of each identity is kept in the
    store and reused when the command is given without an argument.
    """

    def __init__(
        self,
        name: str,
        provider: ProviderPort,
        usage: str,
        *,
        remember_location: bool = False,
    ) -> None:
        self.name = name
        self.usage = usage
        self._provider = provider
        self._remember = remember_location
        self.matches = command_trigger(name)

    def handle(self, context: ChatContext, store: StoragePort) -> HandlerOutcome:
        query = context.rest.strip()
        if self._remember:
            if query:
                store.set_location(context.nick, query)
            else:
                query = store.get_location(context.nick) or ""
        if not query:
            return ImmediateText((f"Hint: {self.usage}",))

        async def _work() -> Sequence[str]:
            return [await self._provider.fetch(query)]

        return Deferred(_work)


class UrlTitleHandler:
    """Reply with the page title of every URL posted in a channel."""

    name = "titles"
    usage: Optional[str] = None

    def __init__(self, fetcher: ProviderPort, max_urls: int = 3, fetch_timeout: float = 8.0) -> None:
        self._fetcher = fetcher
        self._max_urls = max_urls
        # Must stay below the router's handler timeout.
        self._fetch_timeout = fetch_timeout

    def matches(self, context: ChatContext) -> bool:
        return context.channel is not None and URL_PATTERN.search(context.text) is not None

    def handle(self, context: ChatContext, store: StoragePort) -> HandlerOutcome:
        urls = find_urls(context.text, self._max_urls)
        if not urls:
            return ImmediateText(())
        return Deferred(lambda: self._titles(urls))

    async def _titles(self, urls: List[str]) -> Sequence[str]:
        results = await asyncio.gather(
            *(
                asyncio.wait_for(self._fetcher.fetch(url), timeout=self._fetch_timeout)
                for url in urls
            ),
            return_exceptions=True,
        )
        titles: List[str] = []
        for url, result in zip(urls, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                # Slow pages and pages without a usable title are skipped silently.
                LOGGER.debug("No title for %s: %s", url, result)
                continue
            if result:
                titles.append(f"{TITLE_MARKER} {result}")
        return titles


def error_outcome(handler_name: str, exc: BaseException) -> Error:
    """Turn a handler failure into the single line shown in the channel."""

    if isinstance(exc, HandlerError):
        return Error(exc.user_text)
    return Error(f"{handler_name}: something went wrong")
