"""Command router.

For every decoded chat line the router enforces a strict order:
1) Build a ChatContext from the protocol message
2) Record the SeenRecord for the speaker (always, even for commands)
3) Deliver the speaker's queued memos, oldest first, up to a per-turn cap
4) Match the first registered route and run its handler
5) Queue handler output on the outbound throttle

Steps 1-4 run inline so seen updates and memo deliveries follow arrival
order. Deferred handler work runs as separate tasks and may finish in any
order relative to other handlers.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence, Set

from core.config import RouterConfig
from core.context import build_context
from core.errors import HandlerError, StoreError
from core.formatting import action_snippet, format_delivery, kicked_snippet, saying_snippet
from core.handlers import error_outcome
from core.models import (
    ChatContext,
    Deferred,
    Error,
    HandlerOutcome,
    ImmediateText,
    OutboundMessage,
    ParsedMessage,
)
from core.ports import StoragePort
from core.protocol import irc_lower, privmsg_lines
from core.throttle import OutboundThrottle

LOGGER = logging.getLogger(__name__)

STORE_UNAVAILABLE = "storage is unavailable right now, try again later"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Route:
    """One entry of the dispatch table, evaluated in registration order."""

    name: str
    predicate: Callable[[ChatContext], bool]
    handler: Callable[[ChatContext, StoragePort], HandlerOutcome]
    usage: Optional[str] = None


class CommandRouter:
    """Orchestrates seen tracking, memo delivery and handler dispatch."""

    def __init__(
        self,
        storage: StoragePort,
        throttle: OutboundThrottle,
        config: RouterConfig,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._storage = storage
        self._throttle = throttle
        self._config = config
        self._clock = clock
        self._routes: List[Route] = []
        self._tasks: Set[asyncio.Task] = set()
        self._ignored = {irc_lower(nick) for nick in config.ignored_nicks}

    def register(self, handler) -> Route:
        """Register a handler object exposing name/usage/matches/handle."""

        return self.add_route(
            Route(
                name=handler.name,
                predicate=handler.matches,
                handler=handler.handle,
                usage=getattr(handler, "usage", None),
            )
        )

    def add_route(self, route: Route) -> Route:
        self._routes.append(route)
        return route

    def usages(self) -> List[str]:
        return [route.usage for route in self._routes if route.usage]

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    def send(self, target: str, text: str) -> None:
        """Queue ``text`` for ``target``, split to fit the line limit."""

        self._throttle.extend(privmsg_lines(target, text))

    async def handle(self, message: ParsedMessage, current_nick: str) -> None:
        """Process one decoded message through the routing pipeline."""

        if message.command == "KICK":
            self._observe_kick(message, current_nick)
            return

        context = build_context(message, current_nick, self._clock())
        if context is None:
            return
        # Our own echoes and other bots never drive seen or commands.
        if context.identity == irc_lower(current_nick) or context.identity in self._ignored:
            return

        self._observe(context)
        self._deliver_notifications(context)

        route = self._match(context)
        if route is None:
            return
        self._dispatch(route, context)

    def _observe(self, context: ChatContext) -> None:
        limit = self._config.snippet_chars
        if context.is_action:
            snippet = action_snippet(context.text, limit)
        else:
            snippet = saying_snippet(context.text, limit)
        try:
            self._storage.record_seen(context.nick, context.date, snippet, context.channel)
        except StoreError:
            LOGGER.error("Could not record seen for %s", context.nick, exc_info=True)

    def _observe_kick(self, message: ParsedMessage, current_nick: str) -> None:
        if len(message.params) < 2:
            return
        channel, kicked = message.params[0], message.params[1]
        if irc_lower(kicked) == irc_lower(current_nick):
            return
        try:
            self._storage.record_seen(kicked, self._clock(), kicked_snippet(channel), channel)
        except StoreError:
            LOGGER.error("Could not record kick of %s", kicked, exc_info=True)

    def _deliver_notifications(self, context: ChatContext) -> None:
        try:
            due = self._storage.drain_due_notifications(context.nick, self._config.per_turn_cap)
        except StoreError:
            # Memos stay queued and are retried the next time the nick speaks.
            LOGGER.error("Could not load memos for %s", context.nick, exc_info=True)
            return
        for notification in due:
            lines = privmsg_lines(context.reply_to, format_delivery(context.nick, notification))
            self._throttle.extend(replace(line, notification_id=notification.id) for line in lines)
            LOGGER.info("Delivered memo %s to %s", notification.id, context.nick)

    def _match(self, context: ChatContext) -> Optional[Route]:
        for route in self._routes:
            try:
                if route.predicate(context):
                    return route
            except Exception:
                LOGGER.warning("Trigger for %s failed", route.name, exc_info=True)
        return None

    def _dispatch(self, route: Route, context: ChatContext) -> None:
        try:
            outcome = route.handler(context, self._storage)
        except StoreError:
            LOGGER.error("Store failure in %s", route.name, exc_info=True)
            outcome = Error(STORE_UNAVAILABLE)
        except Exception as exc:
            if not isinstance(exc, HandlerError):
                LOGGER.warning("Handler %s failed", route.name, exc_info=True)
            outcome = error_outcome(route.name, exc)

        if isinstance(outcome, Deferred):
            task = asyncio.create_task(self._run_deferred(route, context, outcome))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            return
        self._emit(context, outcome)

    async def _run_deferred(self, route: Route, context: ChatContext, outcome: Deferred) -> None:
        try:
            lines = await asyncio.wait_for(outcome.work(), timeout=self._config.handler_timeout)
            result: HandlerOutcome = ImmediateText(tuple(lines))
        except asyncio.TimeoutError:
            LOGGER.warning("Handler %s timed out after %ss", route.name, self._config.handler_timeout)
            result = Error(f"{route.name}: timed out")
        except HandlerError as exc:
            LOGGER.info("Handler %s reported: %s", route.name, exc.user_text)
            result = error_outcome(route.name, exc)
        except Exception as exc:
            LOGGER.warning("Handler %s failed", route.name, exc_info=True)
            result = error_outcome(route.name, exc)
        self._emit(context, result)

    def _emit(self, context: ChatContext, outcome: HandlerOutcome) -> None:
        lines: Sequence[str]
        if isinstance(outcome, Error):
            lines = (outcome.text,)
        elif isinstance(outcome, ImmediateText):
            lines = outcome.lines
        else:
            raise TypeError(f"Unexpected handler outcome: {outcome!r}")
        for line in lines:
            if line:
                self.send(context.reply_to, line)

    async def shutdown(self, grace: Optional[float] = None) -> None:
        """Let in-flight handlers finish within ``grace`` seconds, then cancel them."""

        grace = self._config.shutdown_grace if grace is None else grace
        pending = set(self._tasks)
        if not pending:
            return
        LOGGER.info("Waiting up to %ss for %s handler(s)", grace, len(pending))
        _, still_running = await asyncio.wait(pending, timeout=grace)
        for task in still_running:
            task.cancel()
        if still_running:
            await asyncio.gather(*still_running, return_exceptions=True)
            LOGGER.info("Abandoned %s handler(s) at shutdown", len(still_running))

    def release_unsent(self, messages: Sequence[OutboundMessage]) -> None:
        """Return memos whose delivery lines never left the throttle to the queue."""

        ids = sorted({m.notification_id for m in messages if m.notification_id is not None})
        if not ids:
            return
        try:
            self._storage.requeue_notifications(ids)
        except StoreError:
            LOGGER.error("Could not return %s memo(s) to the queue", len(ids), exc_info=True)
            return
        LOGGER.warning("Returned %s unsent memo(s) to the queue", len(ids))
